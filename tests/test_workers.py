from typing import get_type_hints

import pytest

from catering_ops.errors import ForbiddenError, NotFoundError
from catering_ops.models import (
    WorkerProfile,
    WorkerProfileCreate,
    WorkerProfileFilters,
    WorkerProfileUpdate,
    WorkerStatus,
)
from catering_ops.roles import ProviderRole
from catering_ops.workers import WorkerService, filters_key, workers_key


def test_filters_key_ignores_empty_filters():
    assert filters_key(None) is None
    assert filters_key(WorkerProfileFilters()) is None
    assert filters_key(WorkerProfileFilters(role="Cook")) == '{"role":"Cook"}'


@pytest.mark.asyncio
async def test_list_sorted_by_name_with_filters(seeded, make_service):
    workers = make_service(WorkerService, role=ProviderRole.STAFF, user_id="user-staff")

    everyone = await workers.list_workers()
    active = await workers.list_workers(WorkerProfileFilters(status=WorkerStatus.ACTIVE))
    weekend_cooks = await workers.list_workers(
        WorkerProfileFilters(role="Cook", tags=["weekend"])
    )
    bilingual = await workers.list_workers(WorkerProfileFilters(tags=["bilingual", "weekend"]))
    search = await workers.list_workers(WorkerProfileFilters(search="LIM"))

    assert [w.name for w in everyone] == ["Bob Reyes", "Carla Lim"]
    assert [w.id for w in active] == ["w-bob"]
    assert [w.id for w in weekend_cooks] == ["w-carla"]
    assert [w.id for w in bilingual] == ["w-bob"]
    assert [w.id for w in search] == ["w-carla"]


@pytest.mark.asyncio
async def test_roles_and_tags_vocabulary(seeded, make_service):
    workers = make_service(WorkerService)
    assert await workers.roles() == ["Cook", "Server"]
    assert await workers.tags() == ["bilingual", "weekend"]


@pytest.mark.asyncio
async def test_create_worker_refreshes_every_list(seeded, make_service, cache, notifier):
    workers = make_service(WorkerService, role=ProviderRole.SUPERVISOR, user_id="user-super")
    await workers.list_workers()
    await workers.list_workers(WorkerProfileFilters(status=WorkerStatus.ACTIVE))
    await workers.roles()

    created = await workers.create_worker(
        WorkerProfileCreate(name="Ana Dizon", role="Bartender", tags=["weekend"])
    )

    assert created.provider_id == "prov-1"
    assert [w.name for w in cache.get_query_data(workers_key("prov-1"))] == [
        "Ana Dizon",
        "Bob Reyes",
        "Carla Lim",
    ]
    active_key = workers_key("prov-1", WorkerProfileFilters(status=WorkerStatus.ACTIVE))
    assert [w.id for w in cache.get_query_data(active_key)] == [created.id, "w-bob"]
    assert "Bartender" in await workers.roles()
    assert notifier.recent()[0].title == "Worker profile created successfully"


@pytest.mark.asyncio
async def test_update_worker_only_touches_sent_fields(seeded, make_service):
    workers = make_service(WorkerService)
    await workers.get("w-bob")

    updated = await workers.update_worker(
        "w-bob", WorkerProfileUpdate(hourly_rate=110.0, tags=["bilingual"])
    )

    assert updated.hourly_rate == 110.0
    assert updated.tags == ["bilingual"]
    assert updated.phone == "+639170000001"
    assert (await workers.get("w-bob")).hourly_rate == 110.0


@pytest.mark.asyncio
async def test_assign_worker_team(seeded, make_service):
    workers = make_service(WorkerService)

    assigned = await workers.assign_worker_team("w-carla", "team-a")
    assert assigned.team_id == "team-a"

    cleared = await workers.assign_worker_team("w-carla", None)
    assert cleared.team_id is None


@pytest.mark.asyncio
async def test_delete_worker(seeded, make_service, cache):
    workers = make_service(WorkerService)
    await workers.list_workers()
    await workers.get("w-carla")

    await workers.delete_worker("w-carla")

    assert [w.id for w in cache.get_query_data(workers_key("prov-1"))] == ["w-bob"]
    with pytest.raises(NotFoundError):
        await workers.get("w-carla")


@pytest.mark.asyncio
async def test_staff_cannot_manage_workers(seeded, make_service, notifier):
    workers = make_service(WorkerService, role=ProviderRole.STAFF, user_id="user-staff")

    with pytest.raises(ForbiddenError):
        await workers.create_worker(WorkerProfileCreate(name="Nope"))
    with pytest.raises(ForbiddenError):
        await workers.delete_worker("w-bob")
    assert notifier.recent() == []


def test_service_return_annotations_use_builtin_list():
    hints = get_type_hints(WorkerService.roles)
    assert hints["return"] == list[str]
    assert get_type_hints(WorkerService.tags)["return"] == list[str]
    assert get_type_hints(WorkerService.list_workers)["return"] == list[WorkerProfile]


@pytest.mark.asyncio
async def test_mutation_refetches_only_its_own_provider(
    seeded, make_service, monkeypatch
):
    seeded.seed(
        "worker_profiles",
        [{"id": "w-other", "provider_id": "prov-2", "name": "Dina Uy"}],
    )
    await make_service(WorkerService, provider_id="prov-2").list_workers()
    workers = make_service(WorkerService)
    await workers.list_workers()

    scoped_to = []
    real_select = seeded.select

    async def select(table, *, filters=(), **kwargs):
        filters = list(filters)
        if table == "worker_profiles":
            scoped_to.extend(f.value for f in filters if f.column == "provider_id")
        return await real_select(table, filters=filters, **kwargs)

    monkeypatch.setattr(seeded, "select", select)

    await workers.create_worker(WorkerProfileCreate(name="Ana Dizon"))

    assert "prov-1" in scoped_to
    assert "prov-2" not in scoped_to
