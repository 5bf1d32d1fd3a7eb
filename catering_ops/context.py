import logging
from dataclasses import dataclass

from catering_ops.cache import Fetcher, QueryCache, QueryKey
from catering_ops.config import Settings
from catering_ops.database import DataStore, eq, select_one
from catering_ops.errors import ForbiddenError, MissingContextError
from catering_ops.models import MemberStatus, ProviderMember
from catering_ops.optimistic import MutationController
from catering_ops.roles import ProviderRole, capabilities_for

logger = logging.getLogger(__name__)

PROVIDER_REQUIRED = "Provider ID is required"
AUTH_REQUIRED = "Authentication required"


@dataclass(frozen=True)
class ProviderContext:
    """Who is acting, and for which provider."""

    provider_id: str | None
    user_id: str | None
    role: ProviderRole | None = None


async def get_current_membership(
    store: DataStore, provider_id: str, user_id: str
) -> ProviderMember | None:
    row = await select_one(
        store,
        "provider_members",
        filters=[
            eq("provider_id", provider_id),
            eq("user_id", user_id),
            eq("status", MemberStatus.ACTIVE),
        ],
    )
    return ProviderMember.model_validate(row) if row else None


async def load_context(
    store: DataStore, provider_id: str | None, user_id: str | None
) -> ProviderContext:
    if not user_id:
        raise MissingContextError(AUTH_REQUIRED, status_code=401)
    if not provider_id:
        raise MissingContextError(PROVIDER_REQUIRED)

    membership = await get_current_membership(store, provider_id, user_id)
    if membership is None:
        raise ForbiddenError("You are not a member of this provider")
    return ProviderContext(provider_id, user_id, membership.role)


class ProviderService:
    """
    Base for the per-collection services. Holds the collaborators every
    service needs and the provider context the queries are scoped to.
    """

    def __init__(
        self,
        store: DataStore,
        cache: QueryCache,
        mutations: MutationController,
        context: ProviderContext,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.mutations = mutations
        self.context = context
        self.settings = settings or Settings()

    @property
    def provider_id(self) -> str:
        if not self.context.provider_id:
            raise MissingContextError(PROVIDER_REQUIRED)
        return self.context.provider_id

    @property
    def user_id(self) -> str:
        if not self.context.user_id:
            raise MissingContextError(AUTH_REQUIRED, status_code=401)
        return self.context.user_id

    def ensure_context(self) -> None:
        if not self.context.user_id:
            raise MissingContextError(AUTH_REQUIRED, status_code=401)
        if not self.context.provider_id:
            raise MissingContextError(PROVIDER_REQUIRED)

    def require(self, capability: str, message: str) -> None:
        self.ensure_context()
        role = self.context.role
        if role is None or not getattr(capabilities_for(role), capability):
            raise ForbiddenError(message)

    async def query(
        self, key: QueryKey, fetcher: Fetcher, *, stale_time: float | None = None
    ):
        return await self.cache.fetch_query(
            key,
            fetcher,
            stale_time=(
                self.settings.query_stale_seconds if stale_time is None else stale_time
            ),
        )
