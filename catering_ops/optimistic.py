"""
Optimistic updates for cached collections.

A mutation predicts its outcome into the cache right away, performs the
remote write, and then either confirms (invalidate + refetch) or restores
the snapshot it took before predicting. Each mutation produces exactly one
notification.

    idle -> predicting -> remote_pending -> confirmed   -> idle
                     \\                 \\-> rolled_back -> idle
                      \\-> rolled_back (prediction raised)
"""

import copy
import itertools
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel

from catering_ops.cache import QueryCache, QueryKey
from catering_ops.errors import InvalidTransitionError
from catering_ops.notifier import Notifier

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp-"

Predict = Callable[[Any], Any]
Execute = Callable[[], Awaitable[Any]]
Message = str | Callable[[Any], str] | None


class MutationState(StrEnum):
    IDLE = "idle"
    PREDICTING = "predicting"
    REMOTE_PENDING = "remote_pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


class MutationEvent(StrEnum):
    BEGIN = "begin"
    PREDICTED = "predicted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SETTLED = "settled"


_TRANSITIONS: dict[tuple[MutationState, MutationEvent], MutationState] = {
    (MutationState.IDLE, MutationEvent.BEGIN): MutationState.PREDICTING,
    (MutationState.PREDICTING, MutationEvent.PREDICTED): MutationState.REMOTE_PENDING,
    (MutationState.PREDICTING, MutationEvent.FAILED): MutationState.ROLLED_BACK,
    (MutationState.REMOTE_PENDING, MutationEvent.SUCCEEDED): MutationState.CONFIRMED,
    (MutationState.REMOTE_PENDING, MutationEvent.FAILED): MutationState.ROLLED_BACK,
    (MutationState.CONFIRMED, MutationEvent.SETTLED): MutationState.IDLE,
    (MutationState.ROLLED_BACK, MutationEvent.SETTLED): MutationState.IDLE,
}


def transition(state: MutationState, event: MutationEvent) -> MutationState:
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(
            f"cannot apply {event.value!r} in state {state.value!r}"
        ) from None


# Temporary records


def temporary_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def _record_id(record: Any) -> Any:
    if isinstance(record, dict):
        return record.get("id")
    return getattr(record, "id", None)


def is_temporary(record: Any) -> bool:
    record_id = _record_id(record)
    return isinstance(record_id, str) and record_id.startswith(TEMP_ID_PREFIX)


def strip_temporary(records: Iterable[Any] | None) -> list[Any] | None:
    """Drop predicted placeholders; they must never pass for confirmed rows."""
    if records is None:
        return None
    return [r for r in records if not is_temporary(r)]


# Prediction helpers. Each returns a new list and never mutates `old`.


def remove_by_id(record_id: str) -> Predict:
    def predict(old: list[Any]) -> list[Any]:
        return [r for r in old if _record_id(r) != record_id]

    return predict


def replace_by_id(record_id: str, **changes: Any) -> Predict:
    def apply(record: Any) -> Any:
        if _record_id(record) != record_id:
            return record
        if isinstance(record, BaseModel):
            return record.model_copy(update=changes)
        return {**record, **changes}

    def predict(old: list[Any]) -> list[Any]:
        return [apply(r) for r in old]

    return predict


def prepend(record: Any) -> Predict:
    def predict(old: list[Any]) -> list[Any]:
        return [record, *old]

    return predict


def append(record: Any) -> Predict:
    def predict(old: list[Any]) -> list[Any]:
        return [*old, record]

    return predict


def _render(message: Message, value: Any) -> str | None:
    if callable(message):
        return message(value)
    return message


@dataclass
class MutationCommand:
    """
    One optimistic mutation against the collection cached at
    `collection_key`.

    `success_message` may be a string or a callable receiving the remote
    result. With an `error_title`, failures notify as title + the failure
    text as description; without one the failure text is the title.
    """

    collection_key: QueryKey
    predict: Predict
    execute: Execute
    success_message: Message = None
    success_description: Message = None
    error_title: str | None = None
    # extra collections to refetch on success, e.g. detail views
    also_invalidate: list[QueryKey] = field(default_factory=list)


@dataclass
class MutationSnapshot:
    collection_key: QueryKey
    value: Any
    existed: bool


class MutationController:
    def __init__(self, cache: QueryCache, notifier: Notifier) -> None:
        self.cache = cache
        self.notifier = notifier
        self._active: dict[QueryKey, dict[int, MutationState]] = {}
        self._ids = itertools.count(1)

    def states(self, key: QueryKey) -> list[MutationState]:
        """States of the unsettled mutations on `key`, oldest first."""
        return list(self._active.get(key, {}).values())

    def _take_snapshot(self, key: QueryKey) -> MutationSnapshot:
        return MutationSnapshot(
            collection_key=key,
            value=copy.deepcopy(self.cache.get_query_data(key)),
            existed=self.cache.has_query_data(key),
        )

    def _restore(self, snapshot: MutationSnapshot) -> None:
        if snapshot.existed:
            self.cache.set_query_data(snapshot.collection_key, lambda _: snapshot.value)
        else:
            self.cache.clear_query_data(snapshot.collection_key)

    def _notify_error(self, command: MutationCommand, exc: Exception) -> None:
        reason = str(exc) or exc.__class__.__name__
        if command.error_title:
            self.notifier.error(command.error_title, reason)
        else:
            self.notifier.error(reason)

    async def apply(self, command: MutationCommand) -> Any:
        key = command.collection_key
        active = self._active.setdefault(key, {})
        if active:
            logger.warning(
                f"⚠️ Mutation on {key} started while {len(active)} other(s) are unsettled"
            )
        mutation_id = next(self._ids)
        active[mutation_id] = transition(MutationState.IDLE, MutationEvent.BEGIN)

        def advance(event: MutationEvent) -> None:
            active[mutation_id] = transition(active[mutation_id], event)

        try:
            await self.cache.cancel_queries(key)
            snapshot = self._take_snapshot(key)

            try:
                old = snapshot.value if snapshot.existed else []
                self.cache.set_query_data(
                    key, lambda _: command.predict(copy.deepcopy(old))
                )
                advance(MutationEvent.PREDICTED)
                result = await command.execute()
            except BaseException as e:
                # cancellation rolls back too, but only real failures notify
                self._restore(snapshot)
                advance(MutationEvent.FAILED)
                if not isinstance(e, Exception):
                    logger.warning(f"⚠️ Mutation on {key} cancelled; cache restored")
                    raise
                logger.error(f"❌ Mutation on {key} rolled back: {e}")
                self._notify_error(command, e)
                raise

            advance(MutationEvent.SUCCEEDED)
            await self.cache.invalidate_queries(key)
            for extra in command.also_invalidate:
                await self.cache.invalidate_queries(extra)
            if self.cache.has_query_data(key):
                self.cache.set_query_data(key, strip_temporary)

            title = _render(command.success_message, result)
            if title:
                self.notifier.success(
                    title, _render(command.success_description, result)
                )
            return result
        finally:
            state = active.pop(mutation_id)
            if state in (MutationState.CONFIRMED, MutationState.ROLLED_BACK):
                transition(state, MutationEvent.SETTLED)
            if not active:
                self._active.pop(key, None)


async def apply_optimistic(
    cache: QueryCache,
    key: QueryKey,
    predict: Predict,
    request: Execute,
    *,
    notifier: Notifier,
    success_message: Message = "Changes saved",
) -> Any:
    """One-off form of MutationController.apply."""
    controller = MutationController(cache, notifier)
    return await controller.apply(
        MutationCommand(
            collection_key=key,
            predict=predict,
            execute=request,
            success_message=success_message,
        )
    )
