import logging

from catering_ops.context import ProviderService
from catering_ops.database import Order, eq, select_one
from catering_ops.errors import NotFoundError
from catering_ops.models import Booking, BookingStatus, MemberStatus, ShiftStatus, Team
from catering_ops.optimistic import MutationCommand, replace_by_id, strip_temporary
from catering_ops.roles import ProviderRole, map_legacy_role
from catering_ops.shifts import booking_shifts_key

logger = logging.getLogger(__name__)

LISTS_KEY = ("bookings", "list")


def bookings_key(
    provider_id: str, status: BookingStatus | None = None
) -> tuple[str | None, ...]:
    return (*LISTS_KEY, provider_id, status)


def booking_lists_key(provider_id: str) -> tuple[str, ...]:
    return (*LISTS_KEY, provider_id)


def booking_detail_key(provider_id: str, booking_id: str) -> tuple[str, ...]:
    return ("bookings", "detail", provider_id, booking_id)


def shift_role_for(member_role: str) -> str:
    if map_legacy_role(member_role) == ProviderRole.SUPERVISOR:
        return "Supervisor"
    return "Staff"


class BookingService(ProviderService):
    async def list_bookings(self, status: BookingStatus | None = None) -> list[Booking]:
        """Bookings by event date, soonest first."""
        provider_id = self.provider_id
        filters = [eq("provider_id", provider_id)]
        if status is not None:
            filters.append(eq("status", status))

        async def fetch() -> list[Booking]:
            rows = await self.store.select(
                "bookings", filters=filters, order=Order("event_date")
            )
            return strip_temporary([Booking.model_validate(r) for r in rows])

        return await self.query(bookings_key(provider_id, status), fetch)

    async def _fetch_booking(self, booking_id: str) -> Booking:
        row = await select_one(
            self.store,
            "bookings",
            filters=[eq("id", booking_id), eq("provider_id", self.provider_id)],
        )
        if row is None:
            raise NotFoundError("Booking")
        return Booking.model_validate(row)

    async def get(self, booking_id: str) -> Booking:
        return await self.query(
            booking_detail_key(self.provider_id, booking_id),
            lambda: self._fetch_booking(booking_id),
        )

    async def _roster_team(self, booking_id: str, team_id: str) -> int:
        """Schedule every active member of the team who has no shift yet."""
        members = await self.store.select(
            "provider_members",
            filters=[
                eq("provider_id", self.provider_id),
                eq("team_id", team_id),
                eq("status", MemberStatus.ACTIVE),
            ],
        )
        existing = await self.store.select(
            "shifts", filters=[eq("booking_id", booking_id)]
        )
        scheduled = {s.get("user_id") for s in existing}

        created = 0
        for member in members:
            if not member.get("user_id") or member["user_id"] in scheduled:
                continue
            await self.store.insert(
                "shifts",
                {
                    "provider_id": self.provider_id,
                    "booking_id": booking_id,
                    "user_id": member["user_id"],
                    "role": shift_role_for(member.get("role") or ""),
                    "status": ShiftStatus.SCHEDULED,
                },
            )
            created += 1
        return created

    async def assign_team(self, booking_id: str, team_id: str | None) -> Booking:
        """
        Set or clear the team handling a booking. Assigning a team also
        schedules its active members on the booking.
        """
        self.require(
            "can_assign_bookings", "You do not have permission to assign teams"
        )
        provider_id = self.provider_id

        async def execute() -> Booking:
            await self._fetch_booking(booking_id)
            team = None
            if team_id is not None:
                row = await select_one(
                    self.store,
                    "teams",
                    filters=[eq("id", team_id), eq("provider_id", provider_id)],
                )
                if row is None:
                    raise NotFoundError("Team")
                team = Team.model_validate(row)

            rows = await self.store.update(
                "bookings",
                {"team_id": team_id},
                filters=[eq("id", booking_id), eq("provider_id", provider_id)],
            )
            if team is not None:
                created = await self._roster_team(booking_id, team.id)
                logger.info(
                    f"Scheduled {created} member(s) of {team.name} on booking {booking_id}"
                )
            return Booking.model_validate(rows[0])

        return await self.mutations.apply(
            MutationCommand(
                collection_key=bookings_key(provider_id),
                predict=replace_by_id(booking_id, team_id=team_id),
                execute=execute,
                success_message="Team assigned to booking",
                also_invalidate=[
                    booking_lists_key(provider_id),
                    booking_detail_key(provider_id, booking_id),
                    booking_shifts_key(provider_id, booking_id),
                ],
            )
        )
