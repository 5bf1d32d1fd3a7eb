"""
Service locations. A provider with any locations has exactly one primary
location; every write that touches `is_primary` keeps it that way.
"""

import logging
from collections.abc import Iterable

from catering_ops.context import ProviderService
from catering_ops.database import Order, eq, select_one
from catering_ops.errors import BadRequestError, NotFoundError
from catering_ops.models import LocationCreate, LocationUpdate, ServiceLocation
from catering_ops.optimistic import (
    MutationCommand,
    remove_by_id,
    replace_by_id,
    strip_temporary,
)

logger = logging.getLogger(__name__)


def locations_key(provider_id: str) -> tuple[str, ...]:
    return ("locations", "list", provider_id)


def mark_primary(
    locations: Iterable[ServiceLocation], location_id: str
) -> list[ServiceLocation]:
    """Return a copy where `location_id` is the only primary location."""
    return [
        loc.model_copy(update={"is_primary": loc.id == location_id})
        for loc in locations
    ]


def primary_first(locations: Iterable[ServiceLocation]) -> list[ServiceLocation]:
    return sorted(locations, key=lambda loc: not loc.is_primary)


def _label(location: ServiceLocation) -> str:
    return f"{location.city}, {location.province}"


class LocationService(ProviderService):
    async def list_locations(self) -> list[ServiceLocation]:
        """Primary location first, then oldest first."""
        provider_id = self.provider_id

        async def fetch() -> list[ServiceLocation]:
            rows = await self.store.select(
                "service_locations",
                filters=[eq("provider_id", provider_id)],
                order=Order("created_at"),
            )
            locations = [ServiceLocation.model_validate(r) for r in rows]
            return primary_first(strip_temporary(locations))

        return await self.query(locations_key(provider_id), fetch)

    async def _get(self, location_id: str) -> ServiceLocation:
        row = await select_one(
            self.store,
            "service_locations",
            filters=[eq("id", location_id), eq("provider_id", self.provider_id)],
        )
        if row is None:
            raise NotFoundError("Service location")
        return ServiceLocation.model_validate(row)

    async def _clear_primary(self, provider_id: str) -> None:
        await self.store.update(
            "service_locations",
            {"is_primary": False},
            filters=[eq("provider_id", provider_id), eq("is_primary", True)],
        )

    async def _update(self, location_id: str, values: dict) -> ServiceLocation:
        rows = await self.store.update(
            "service_locations",
            values,
            filters=[eq("id", location_id), eq("provider_id", self.provider_id)],
        )
        if not rows:
            raise NotFoundError("Service location")
        return ServiceLocation.model_validate(rows[0])

    async def create_location(self, data: LocationCreate) -> ServiceLocation:
        self.require(
            "can_manage_team", "You do not have permission to create service locations"
        )
        provider_id = self.provider_id

        async def execute() -> ServiceLocation:
            existing = await self.store.select(
                "service_locations", filters=[eq("provider_id", provider_id)], limit=1
            )
            is_primary = data.is_primary or not existing
            if is_primary and existing:
                await self._clear_primary(provider_id)
            row = await self.store.insert(
                "service_locations",
                {
                    **data.model_dump(),
                    "provider_id": provider_id,
                    "is_primary": is_primary,
                },
            )
            return ServiceLocation.model_validate(row)

        # nothing to predict without an id; the refetch places the new row
        return await self.mutations.apply(
            MutationCommand(
                collection_key=locations_key(provider_id),
                predict=lambda old: old,
                execute=execute,
                success_message="Location created",
                success_description=lambda loc: f"{_label(loc)} has been added.",
                error_title="Failed to create location",
            )
        )

    async def update_location(
        self, location_id: str, data: LocationUpdate
    ) -> ServiceLocation:
        self.require(
            "can_manage_team", "You do not have permission to update service locations"
        )
        provider_id = self.provider_id
        changes = data.model_dump(exclude_unset=True)
        current = await self._get(location_id)
        if changes.get("is_primary") is False and current.is_primary:
            raise BadRequestError(
                "Set another location as primary instead of unsetting this one"
            )

        async def execute() -> ServiceLocation:
            if changes.get("is_primary"):
                await self._clear_primary(provider_id)
            return await self._update(location_id, changes)

        def predict(old: list[ServiceLocation]) -> list[ServiceLocation]:
            updated = replace_by_id(location_id, **changes)(old)
            if changes.get("is_primary"):
                updated = mark_primary(updated, location_id)
            return updated

        return await self.mutations.apply(
            MutationCommand(
                collection_key=locations_key(provider_id),
                predict=predict,
                execute=execute,
                success_message="Location updated",
                success_description=lambda loc: f"{_label(loc)} has been updated.",
                error_title="Failed to update location",
            )
        )

    async def set_primary_location(self, location_id: str) -> ServiceLocation:
        self.require(
            "can_manage_team", "You do not have permission to update service locations"
        )
        provider_id = self.provider_id

        async def execute() -> ServiceLocation:
            await self._get(location_id)
            await self._clear_primary(provider_id)
            return await self._update(location_id, {"is_primary": True})

        return await self.mutations.apply(
            MutationCommand(
                collection_key=locations_key(provider_id),
                predict=lambda old: primary_first(mark_primary(old, location_id)),
                execute=execute,
                success_message="Primary location updated",
                success_description=lambda loc: (
                    f"{_label(loc)} is now the primary location."
                ),
                error_title="Failed to set primary location",
            )
        )

    async def delete_location(self, location_id: str) -> None:
        self.require(
            "can_manage_team", "You do not have permission to delete service locations"
        )
        provider_id = self.provider_id

        async def execute() -> None:
            location = await self._get(location_id)

            teams = await self.store.select(
                "teams",
                filters=[
                    eq("provider_id", provider_id),
                    eq("service_location_id", location_id),
                ],
                limit=1,
            )
            if teams:
                raise BadRequestError("Cannot delete location that is assigned to teams")

            others = await self.store.select(
                "service_locations",
                filters=[eq("provider_id", provider_id)],
                order=Order("created_at"),
            )
            others = [r for r in others if r["id"] != location_id]
            if location.is_primary and not others:
                raise BadRequestError("Cannot delete the only service location")

            await self.store.delete(
                "service_locations",
                filters=[eq("id", location_id), eq("provider_id", provider_id)],
            )
            if location.is_primary:
                successor = others[0]["id"]
                logger.info(f"Promoting location {successor} to primary")
                await self._update(successor, {"is_primary": True})

        await self.mutations.apply(
            MutationCommand(
                collection_key=locations_key(provider_id),
                predict=remove_by_id(location_id),
                execute=execute,
                success_message="Location deleted",
                success_description="The service location has been removed.",
                error_title="Failed to delete location",
            )
        )
