import asyncio
import copy
import logging

import pytest

from catering_ops.cache import QueryCache
from catering_ops.errors import InvalidTransitionError
from catering_ops.notifier import Notifier
from catering_ops.optimistic import (
    MutationCommand,
    MutationController,
    MutationEvent,
    MutationState,
    apply_optimistic,
    is_temporary,
    prepend,
    remove_by_id,
    replace_by_id,
    strip_temporary,
    temporary_id,
    transition,
)

MEMBERS_KEY = ("members", "p1")


def test_state_machine_happy_path() -> None:
    state = MutationState.IDLE
    for event, expected in [
        (MutationEvent.BEGIN, MutationState.PREDICTING),
        (MutationEvent.PREDICTED, MutationState.REMOTE_PENDING),
        (MutationEvent.SUCCEEDED, MutationState.CONFIRMED),
        (MutationEvent.SETTLED, MutationState.IDLE),
    ]:
        state = transition(state, event)
        assert state == expected


def test_state_machine_failure_paths() -> None:
    pending = transition(MutationState.PREDICTING, MutationEvent.PREDICTED)
    assert transition(pending, MutationEvent.FAILED) == MutationState.ROLLED_BACK
    assert (
        transition(MutationState.PREDICTING, MutationEvent.FAILED)
        == MutationState.ROLLED_BACK
    )
    assert (
        transition(MutationState.ROLLED_BACK, MutationEvent.SETTLED)
        == MutationState.IDLE
    )


@pytest.mark.parametrize(
    "state, event",
    [
        (MutationState.IDLE, MutationEvent.SUCCEEDED),
        (MutationState.CONFIRMED, MutationEvent.FAILED),
        (MutationState.REMOTE_PENDING, MutationEvent.BEGIN),
        (MutationState.IDLE, MutationEvent.SETTLED),
    ],
)
def test_state_machine_rejects_illegal_transitions(state, event) -> None:
    with pytest.raises(InvalidTransitionError):
        transition(state, event)


def test_temporary_records() -> None:
    temp = {"id": temporary_id()}
    assert is_temporary(temp)
    assert not is_temporary({"id": "m1"})
    assert not is_temporary({"name": "no id"})
    assert strip_temporary([temp, {"id": "m1"}]) == [{"id": "m1"}]
    assert strip_temporary(None) is None


def test_predict_helpers_do_not_mutate_their_input() -> None:
    old = [{"id": "m1", "status": "active"}, {"id": "m2", "status": "active"}]
    before = copy.deepcopy(old)

    assert remove_by_id("m1")(old) == [{"id": "m2", "status": "active"}]
    assert replace_by_id("m2", status="suspended")(old)[1]["status"] == "suspended"
    assert prepend({"id": "m0"})(old)[0] == {"id": "m0"}
    assert old == before


@pytest.mark.asyncio
async def test_pending_removal_then_rollback_on_network_error() -> None:
    cache = QueryCache()
    notifier = Notifier()
    cache.set_query_data(MEMBERS_KEY, [{"id": "m1"}, {"id": "m2"}])

    request_started = asyncio.Event()
    release = asyncio.Event()

    async def request():
        request_started.set()
        await release.wait()
        raise RuntimeError("network down")

    task = asyncio.create_task(
        apply_optimistic(
            cache, MEMBERS_KEY, remove_by_id("m1"), request, notifier=notifier
        )
    )
    await request_started.wait()
    assert cache.get_query_data(MEMBERS_KEY) == [{"id": "m2"}]

    release.set()
    with pytest.raises(RuntimeError, match="network down"):
        await task

    assert cache.get_query_data(MEMBERS_KEY) == [{"id": "m1"}, {"id": "m2"}]
    notifications = notifier.recent()
    assert len(notifications) == 1
    assert notifications[0].level == "error"
    assert notifications[0].title == "network down"


@pytest.mark.asyncio
async def test_cancelled_mutation_rolls_back_without_notifying() -> None:
    cache = QueryCache()
    notifier = Notifier()
    controller = MutationController(cache, notifier)
    cache.set_query_data(MEMBERS_KEY, [{"id": "m1"}, {"id": "m2"}])

    request_started = asyncio.Event()

    async def request():
        request_started.set()
        await asyncio.Event().wait()

    task = asyncio.create_task(
        controller.apply(
            MutationCommand(
                collection_key=MEMBERS_KEY,
                predict=remove_by_id("m1"),
                execute=request,
                success_message="Member removed",
            )
        )
    )
    await request_started.wait()
    assert cache.get_query_data(MEMBERS_KEY) == [{"id": "m2"}]
    assert controller.states(MEMBERS_KEY) == [MutationState.REMOTE_PENDING]

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert cache.get_query_data(MEMBERS_KEY) == [{"id": "m1"}, {"id": "m2"}]
    assert controller.states(MEMBERS_KEY) == []
    assert notifier.recent() == []


@pytest.mark.asyncio
async def test_rollback_restores_snapshot_even_if_predict_mutates() -> None:
    cache = QueryCache()
    notifier = Notifier()
    original = [
        {"id": "w1", "tags": ["weekend"], "availability": {"sat": ["am"]}},
        {"id": "w2", "tags": [], "availability": None},
    ]
    cache.set_query_data(("workers",), copy.deepcopy(original))

    def sloppy_predict(old):
        old[0]["tags"].append("bilingual")
        old[0]["availability"]["sat"].append("pm")
        return old

    async def request():
        raise ConnectionError("timeout")

    with pytest.raises(ConnectionError):
        await apply_optimistic(
            cache, ("workers",), sloppy_predict, request, notifier=notifier
        )

    assert cache.get_query_data(("workers",)) == original


@pytest.mark.asyncio
async def test_rollback_without_cached_value_leaves_nothing_cached() -> None:
    cache = QueryCache()

    async def request():
        raise RuntimeError("nope")

    with pytest.raises(RuntimeError):
        await apply_optimistic(
            cache, ("locations",), prepend({"id": "temp-1"}), request, notifier=Notifier()
        )

    assert not cache.has_query_data(("locations",))
    assert cache.get_query_data(("locations",)) is None


@pytest.mark.asyncio
async def test_confirm_refetches_and_discards_temp_records() -> None:
    cache = QueryCache()
    notifier = Notifier()
    server = [{"id": "inv-1", "email": "a@x.com"}]

    async def fetch():
        return list(server)

    await cache.fetch_query(("invitations",), fetch)

    async def request():
        row = {"id": "inv-2", "email": "b@x.com"}
        server.insert(0, row)
        return row

    result = await apply_optimistic(
        cache,
        ("invitations",),
        prepend({"id": temporary_id(), "email": "b@x.com"}),
        request,
        notifier=notifier,
        success_message="Invitation sent successfully",
    )

    data = cache.get_query_data(("invitations",))
    assert result == {"id": "inv-2", "email": "b@x.com"}
    assert [r["id"] for r in data] == ["inv-2", "inv-1"]
    assert not any(is_temporary(r) for r in data)
    assert [n.title for n in notifier.recent()] == ["Invitation sent successfully"]


@pytest.mark.asyncio
async def test_confirm_without_fetcher_still_strips_temp_records() -> None:
    cache = QueryCache()
    cache.set_query_data(("shifts",), [{"id": "s1"}])

    async def request():
        return {"id": "s2"}

    await apply_optimistic(
        cache, ("shifts",), prepend({"id": temporary_id()}), request, notifier=Notifier()
    )

    assert cache.get_query_data(("shifts",)) == [{"id": "s1"}]


@pytest.mark.asyncio
async def test_error_title_puts_reason_in_description(
    cache: QueryCache, notifier: Notifier, mutations: MutationController
) -> None:
    cache.set_query_data(("locations",), [])

    async def execute():
        raise ValueError("Cannot delete the only service location")

    with pytest.raises(ValueError):
        await mutations.apply(
            MutationCommand(
                collection_key=("locations",),
                predict=lambda old: old,
                execute=execute,
                error_title="Failed to delete location",
            )
        )

    [note] = notifier.recent()
    assert note.title == "Failed to delete location"
    assert note.description == "Cannot delete the only service location"


@pytest.mark.asyncio
async def test_states_are_tracked_per_mutation(
    cache: QueryCache, mutations: MutationController, caplog
) -> None:
    cache.set_query_data(MEMBERS_KEY, [{"id": "m1"}, {"id": "m2"}])
    first_release, second_release = asyncio.Event(), asyncio.Event()

    def command(record_id, release):
        async def execute():
            await release.wait()
            return record_id

        return MutationCommand(
            collection_key=MEMBERS_KEY,
            predict=remove_by_id(record_id),
            execute=execute,
            success_message="Member removed successfully",
        )

    with caplog.at_level(logging.WARNING, logger="catering_ops.optimistic"):
        first = asyncio.create_task(mutations.apply(command("m1", first_release)))
        await asyncio.sleep(0)
        second = asyncio.create_task(mutations.apply(command("m2", second_release)))
        await asyncio.sleep(0)

    assert mutations.states(MEMBERS_KEY) == [
        MutationState.REMOTE_PENDING,
        MutationState.REMOTE_PENDING,
    ]
    assert "unsettled" in caplog.text

    # settle out of order
    second_release.set()
    assert await second == "m2"
    assert mutations.states(MEMBERS_KEY) == [MutationState.REMOTE_PENDING]

    first_release.set()
    assert await first == "m1"
    assert mutations.states(MEMBERS_KEY) == []
    assert cache.get_query_data(MEMBERS_KEY) == []


@pytest.mark.asyncio
async def test_predict_failure_rolls_back(
    cache: QueryCache, notifier: Notifier, mutations: MutationController
) -> None:
    cache.set_query_data(("bookings",), [{"id": "bk-1"}])
    execute_called = False

    async def execute():
        nonlocal execute_called
        execute_called = True

    def bad_predict(old):
        raise KeyError("team_id")

    with pytest.raises(KeyError):
        await mutations.apply(
            MutationCommand(
                collection_key=("bookings",), predict=bad_predict, execute=execute
            )
        )

    assert not execute_called
    assert cache.get_query_data(("bookings",)) == [{"id": "bk-1"}]
    assert len(notifier.recent()) == 1
    assert mutations.states(("bookings",)) == []
