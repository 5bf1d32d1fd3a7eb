"""
Error taxonomy shared by the services and the HTTP layer.
"""


class DashboardError(Exception):
    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code


class MissingContextError(DashboardError):
    """No provider id or no acting user: rejected before any remote call."""

    status_code = 400
    code = "MISSING_CONTEXT"


class ForbiddenError(DashboardError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(DashboardError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str) -> None:
        super().__init__(f"{resource} not found")


class BadRequestError(DashboardError):
    status_code = 400
    code = "BAD_REQUEST"


class DataStoreError(DashboardError):
    """The backing data store rejected a request or could not be reached."""

    status_code = 502
    code = "DATA_STORE_ERROR"


class InvalidTransitionError(ValueError):
    pass
