import logging
from datetime import UTC, date, datetime, time

from catering_ops.assignees import resolve_assignees
from catering_ops.context import ProviderService
from catering_ops.database import Order, eq, gte, select_one
from catering_ops.errors import BadRequestError, NotFoundError
from catering_ops.models import (
    AssigneeType,
    MemberStatus,
    Shift,
    ShiftCreate,
    ShiftStatus,
    ShiftWithAssignee,
    WorkerStatus,
)
from catering_ops.optimistic import (
    MutationCommand,
    append,
    remove_by_id,
    replace_by_id,
    strip_temporary,
    temporary_id,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_NAME = "Loading..."


def booking_shifts_key(provider_id: str, booking_id: str) -> tuple[str, ...]:
    return ("shifts", "list", provider_id, booking_id)


def dashboard_shifts_key(
    provider_id: str, limit: int | None = None
) -> tuple[str | int, ...]:
    """Without `limit` this is the prefix covering every cached limit."""
    key = ("dashboard-shifts", "list", provider_id)
    return key if limit is None else (*key, limit)


def start_of_today() -> datetime:
    return datetime.combine(date.today(), time.min, tzinfo=UTC)


class ShiftService(ProviderService):
    async def _get_booking_row(self, booking_id: str) -> dict:
        booking = await select_one(
            self.store,
            "bookings",
            filters=[eq("id", booking_id), eq("provider_id", self.provider_id)],
        )
        if booking is None:
            raise NotFoundError("Booking")
        return booking

    async def _get_shift(self, shift_id: str) -> Shift:
        row = await select_one(
            self.store,
            "shifts",
            filters=[eq("id", shift_id), eq("provider_id", self.provider_id)],
        )
        if row is None:
            raise NotFoundError("Shift")
        return Shift.model_validate(row)

    async def _load_enriched(self, **query) -> list[ShiftWithAssignee]:
        rows = await self.store.select("shifts", **query)
        shifts = strip_temporary([Shift.model_validate(r) for r in rows])
        logger.debug(f"resolving assignees for {len(shifts)} shift(s)")
        return await resolve_assignees(self.store, shifts)

    async def list_for_booking(self, booking_id: str) -> list[ShiftWithAssignee]:
        provider_id = self.provider_id

        async def fetch() -> list[ShiftWithAssignee]:
            return await self._load_enriched(
                filters=[eq("booking_id", booking_id), eq("provider_id", provider_id)],
                order=Order("scheduled_start"),
            )

        return await self.query(booking_shifts_key(provider_id, booking_id), fetch)

    async def upcoming(self, limit: int | None = None) -> list[ShiftWithAssignee]:
        """Shifts scheduled from the start of today onward, soonest first."""
        provider_id = self.provider_id
        limit = limit or self.settings.dashboard_shift_limit

        async def fetch() -> list[ShiftWithAssignee]:
            return await self._load_enriched(
                filters=[
                    eq("provider_id", provider_id),
                    gte("scheduled_start", start_of_today()),
                ],
                order=Order("scheduled_start"),
                limit=limit,
            )

        return await self.query(dashboard_shifts_key(provider_id, limit), fetch)

    async def _check_assignee(self, data: ShiftCreate) -> None:
        if data.user_id:
            member = await select_one(
                self.store,
                "provider_members",
                filters=[
                    eq("provider_id", self.provider_id),
                    eq("user_id", data.user_id),
                    eq("status", MemberStatus.ACTIVE),
                ],
            )
            if member is None:
                raise BadRequestError("Assignee is not an active team member")
            return

        worker = await select_one(
            self.store,
            "worker_profiles",
            filters=[
                eq("id", data.worker_profile_id),
                eq("provider_id", self.provider_id),
            ],
        )
        if worker is None:
            raise NotFoundError("Worker profile")
        if worker.get("status") != WorkerStatus.ACTIVE:
            raise BadRequestError("Inactive workers cannot be assigned to shifts")

    def _command(self, booking_id: str, **kwargs) -> MutationCommand:
        return MutationCommand(
            collection_key=booking_shifts_key(self.provider_id, booking_id),
            also_invalidate=[dashboard_shifts_key(self.provider_id)],
            **kwargs,
        )

    async def create_shift(self, booking_id: str, data: ShiftCreate) -> Shift:
        self.require(
            "can_assign_bookings",
            "Only owners, admins, and supervisors can assign staff to bookings",
        )
        provider_id = self.provider_id

        async def execute() -> Shift:
            await self._get_booking_row(booking_id)
            await self._check_assignee(data)
            row = await self.store.insert(
                "shifts",
                {
                    **data.model_dump(),
                    "provider_id": provider_id,
                    "booking_id": booking_id,
                    "status": ShiftStatus.SCHEDULED,
                },
            )
            return Shift.model_validate(row)

        placeholder = ShiftWithAssignee(
            id=temporary_id(),
            provider_id=provider_id,
            booking_id=booking_id,
            user_id=data.user_id,
            worker_profile_id=data.worker_profile_id,
            role=data.role,
            scheduled_start=data.scheduled_start,
            scheduled_end=data.scheduled_end,
            notes=data.notes,
            full_name=PLACEHOLDER_NAME,
            email="",
            assignee_type=(
                AssigneeType.TEAM_MEMBER if data.user_id else AssigneeType.WORKER_PROFILE
            ),
        )
        return await self.mutations.apply(
            self._command(
                booking_id,
                predict=append(placeholder),
                execute=execute,
                success_message="Team member assigned successfully",
            )
        )

    async def check_in(self, shift_id: str) -> Shift:
        shift = await self._get_shift(shift_id)
        now = datetime.now(UTC)

        async def execute() -> Shift:
            current = await self._get_shift(shift_id)
            if current.actual_start is not None:
                raise BadRequestError("This shift has already been checked in")
            if current.status == ShiftStatus.CANCELLED:
                raise BadRequestError("Cancelled shifts cannot be checked in")
            return await self._update(
                shift_id, {"actual_start": now, "status": ShiftStatus.CHECKED_IN}
            )

        return await self.mutations.apply(
            self._command(
                shift.booking_id,
                predict=replace_by_id(
                    shift_id, actual_start=now, status=ShiftStatus.CHECKED_IN
                ),
                execute=execute,
                success_message="Checked in successfully",
            )
        )

    async def check_out(self, shift_id: str) -> Shift:
        shift = await self._get_shift(shift_id)
        now = datetime.now(UTC)

        async def execute() -> Shift:
            current = await self._get_shift(shift_id)
            if current.actual_start is None:
                raise BadRequestError("This shift has not been checked in yet")
            if current.actual_end is not None:
                raise BadRequestError("This shift has already been checked out")
            return await self._update(
                shift_id, {"actual_end": now, "status": ShiftStatus.CHECKED_OUT}
            )

        return await self.mutations.apply(
            self._command(
                shift.booking_id,
                predict=replace_by_id(
                    shift_id, actual_end=now, status=ShiftStatus.CHECKED_OUT
                ),
                execute=execute,
                success_message="Checked out successfully",
            )
        )

    async def cancel_shift(self, shift_id: str) -> Shift:
        self.require(
            "can_assign_bookings", "You do not have permission to cancel shifts"
        )
        shift = await self._get_shift(shift_id)

        async def execute() -> Shift:
            current = await self._get_shift(shift_id)
            if current.status == ShiftStatus.CHECKED_OUT:
                raise BadRequestError("Completed shifts cannot be cancelled")
            return await self._update(shift_id, {"status": ShiftStatus.CANCELLED})

        return await self.mutations.apply(
            self._command(
                shift.booking_id,
                predict=replace_by_id(shift_id, status=ShiftStatus.CANCELLED),
                execute=execute,
                success_message="Shift cancelled",
            )
        )

    async def delete_shift(self, shift_id: str) -> None:
        self.require(
            "can_assign_bookings", "You do not have permission to remove shifts"
        )
        shift = await self._get_shift(shift_id)
        provider_id = self.provider_id

        async def execute() -> None:
            removed = await self.store.delete(
                "shifts",
                filters=[eq("id", shift_id), eq("provider_id", provider_id)],
            )
            if not removed:
                raise NotFoundError("Shift")

        await self.mutations.apply(
            self._command(
                shift.booking_id,
                predict=remove_by_id(shift_id),
                execute=execute,
                success_message="Shift removed",
            )
        )

    async def _update(self, shift_id: str, values: dict) -> Shift:
        rows = await self.store.update(
            "shifts",
            values,
            filters=[eq("id", shift_id), eq("provider_id", self.provider_id)],
        )
        if not rows:
            raise NotFoundError("Shift")
        return Shift.model_validate(rows[0])
