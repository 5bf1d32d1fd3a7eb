import logging

from catering_ops.context import ProviderService
from catering_ops.database import Order, contains, eq, ilike, select_one
from catering_ops.errors import NotFoundError
from catering_ops.models import (
    WorkerProfile,
    WorkerProfileCreate,
    WorkerProfileFilters,
    WorkerProfileUpdate,
)
from catering_ops.optimistic import (
    MutationCommand,
    remove_by_id,
    replace_by_id,
    strip_temporary,
)

logger = logging.getLogger(__name__)

LISTS_KEY = ("worker-profiles", "list")
# roles and tags rarely change
VOCABULARY_STALE_SECONDS = 5 * 60


def filters_key(filters: WorkerProfileFilters | None) -> str | None:
    if filters is None:
        return None
    dumped = filters.model_dump_json(exclude_none=True)
    return None if dumped == "{}" else dumped


def workers_key(
    provider_id: str, filters: WorkerProfileFilters | None = None
) -> tuple[str | None, ...]:
    return (*LISTS_KEY, provider_id, filters_key(filters))


def worker_lists_key(provider_id: str) -> tuple[str, ...]:
    return (*LISTS_KEY, provider_id)


def worker_detail_key(provider_id: str, worker_id: str) -> tuple[str, ...]:
    return ("worker-profiles", "detail", provider_id, worker_id)


class WorkerService(ProviderService):
    async def list_workers(
        self, filters: WorkerProfileFilters | None = None
    ) -> list[WorkerProfile]:
        provider_id = self.provider_id
        query_filters = [eq("provider_id", provider_id)]
        if filters is not None:
            if filters.status:
                query_filters.append(eq("status", filters.status))
            if filters.role:
                query_filters.append(eq("role", filters.role))
            if filters.tags:
                query_filters.append(contains("tags", filters.tags))
            if filters.search:
                query_filters.append(ilike("name", f"%{filters.search}%"))

        async def fetch() -> list[WorkerProfile]:
            rows = await self.store.select(
                "worker_profiles", filters=query_filters, order=Order("name")
            )
            logger.debug(f"fetched {len(rows)} worker(s) for provider {provider_id}")
            return strip_temporary([WorkerProfile.model_validate(r) for r in rows])

        return await self.query(workers_key(provider_id, filters), fetch)

    async def _fetch_worker(self, worker_id: str) -> WorkerProfile:
        row = await select_one(
            self.store,
            "worker_profiles",
            filters=[eq("id", worker_id), eq("provider_id", self.provider_id)],
        )
        if row is None:
            raise NotFoundError("Worker profile")
        return WorkerProfile.model_validate(row)

    async def get(self, worker_id: str) -> WorkerProfile:
        return await self.query(
            worker_detail_key(self.provider_id, worker_id),
            lambda: self._fetch_worker(worker_id),
        )

    async def roles(self) -> list[str]:
        provider_id = self.provider_id

        async def fetch() -> list[str]:
            rows = await self.store.select(
                "worker_profiles", filters=[eq("provider_id", provider_id)]
            )
            return sorted({r["role"] for r in rows if r.get("role")})

        return await self.query(
            (*LISTS_KEY, provider_id, "roles"),
            fetch,
            stale_time=VOCABULARY_STALE_SECONDS,
        )

    async def tags(self) -> list[str]:
        provider_id = self.provider_id

        async def fetch() -> list[str]:
            rows = await self.store.select(
                "worker_profiles", filters=[eq("provider_id", provider_id)]
            )
            return sorted({tag for r in rows for tag in r.get("tags") or []})

        return await self.query(
            (*LISTS_KEY, provider_id, "tags"),
            fetch,
            stale_time=VOCABULARY_STALE_SECONDS,
        )

    async def _update(self, worker_id: str, values: dict) -> WorkerProfile:
        rows = await self.store.update(
            "worker_profiles",
            values,
            filters=[eq("id", worker_id), eq("provider_id", self.provider_id)],
        )
        if not rows:
            raise NotFoundError("Worker profile")
        return WorkerProfile.model_validate(rows[0])

    async def create_worker(self, data: WorkerProfileCreate) -> WorkerProfile:
        self.require("can_manage_team", "You do not have permission to add workers")
        provider_id = self.provider_id

        async def execute() -> WorkerProfile:
            row = await self.store.insert(
                "worker_profiles", {**data.model_dump(), "provider_id": provider_id}
            )
            return WorkerProfile.model_validate(row)

        # the new row's position depends on sort and filters, so nothing is
        # predicted; the refetch places it
        return await self.mutations.apply(
            MutationCommand(
                collection_key=workers_key(provider_id),
                predict=lambda old: old,
                execute=execute,
                success_message="Worker profile created successfully",
                also_invalidate=[worker_lists_key(provider_id)],
            )
        )

    async def update_worker(
        self, worker_id: str, data: WorkerProfileUpdate
    ) -> WorkerProfile:
        self.require("can_manage_team", "You do not have permission to edit workers")
        changes = data.model_dump(exclude_unset=True)

        return await self.mutations.apply(
            MutationCommand(
                collection_key=workers_key(self.provider_id),
                predict=replace_by_id(worker_id, **changes),
                execute=lambda: self._update(worker_id, changes),
                success_message="Worker profile updated successfully",
                also_invalidate=[
                    worker_lists_key(self.provider_id),
                    worker_detail_key(self.provider_id, worker_id),
                ],
            )
        )

    async def assign_worker_team(
        self, worker_id: str, team_id: str | None
    ) -> WorkerProfile:
        self.require("can_manage_team", "You do not have permission to manage the team")
        provider_id = self.provider_id

        async def execute() -> WorkerProfile:
            if team_id is not None:
                team = await select_one(
                    self.store,
                    "teams",
                    filters=[eq("id", team_id), eq("provider_id", provider_id)],
                )
                if team is None:
                    raise NotFoundError("Team")
            return await self._update(worker_id, {"team_id": team_id})

        return await self.mutations.apply(
            MutationCommand(
                collection_key=workers_key(provider_id),
                predict=replace_by_id(worker_id, team_id=team_id),
                execute=execute,
                success_message=(
                    "Worker assigned to team" if team_id else "Worker removed from team"
                ),
                also_invalidate=[
                    worker_lists_key(self.provider_id),
                    worker_detail_key(self.provider_id, worker_id),
                ],
            )
        )

    async def delete_worker(self, worker_id: str) -> None:
        self.require("can_manage_team", "You do not have permission to delete workers")
        provider_id = self.provider_id

        async def execute() -> None:
            removed = await self.store.delete(
                "worker_profiles",
                filters=[eq("id", worker_id), eq("provider_id", provider_id)],
            )
            if not removed:
                raise NotFoundError("Worker profile")

        await self.mutations.apply(
            MutationCommand(
                collection_key=workers_key(provider_id),
                predict=remove_by_id(worker_id),
                execute=execute,
                success_message="Worker profile deleted successfully",
                also_invalidate=[worker_lists_key(provider_id)],
            )
        )
        self.cache.remove_queries(worker_detail_key(self.provider_id, worker_id))
