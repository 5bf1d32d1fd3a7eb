"""
Assignee resolution for shift collections.

Each shift points at a team member (user_id), a worker profile
(worker_profile_id) or nobody. Every shift in a batch is resolved
concurrently; a failed lookup degrades that one record to a placeholder name
and never fails the batch.
"""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from pydantic import ValidationError

from catering_ops.database import DataStore, Row, eq, select_one
from catering_ops.errors import DataStoreError
from catering_ops.models import (
    AssigneeType,
    Shift,
    ShiftWithAssignee,
    UserMetadata,
    WorkerSummary,
)

logger = logging.getLogger(__name__)

UNKNOWN_USER = "Unknown User"
UNKNOWN_WORKER = "Unknown Worker"
UNASSIGNED = "Unassigned"


@dataclass(frozen=True)
class TeamMemberRef:
    user_id: str


@dataclass(frozen=True)
class WorkerRef:
    worker_profile_id: str


@dataclass(frozen=True)
class Unassigned:
    pass


AssigneeRef = TeamMemberRef | WorkerRef | Unassigned


def assignee_ref(shift: Shift) -> AssigneeRef:
    if shift.user_id:
        return TeamMemberRef(shift.user_id)
    if shift.worker_profile_id:
        return WorkerRef(shift.worker_profile_id)
    return Unassigned()


def display_name(metadata: UserMetadata) -> str:
    full_name = metadata.raw_user_meta_data.get("full_name")
    if full_name:
        return str(full_name)
    if metadata.email:
        return metadata.email.split("@")[0]
    return UNKNOWN_USER


async def fetch_user_metadata(store: DataStore, user_id: str) -> UserMetadata | None:
    """Look up a user's auth metadata; None when it cannot be found."""
    try:
        result = await store.rpc("get_user_metadata", {"user_id": user_id})
    except DataStoreError as e:
        logger.warning(f"⚠️ User metadata lookup failed for user_id {user_id}: {e}")
        return None

    if isinstance(result, list):
        result = result[0] if result else None
    if not result:
        logger.warning(f"⚠️ No user metadata for user_id {user_id}")
        return None

    try:
        return UserMetadata.model_validate(result)
    except ValidationError as e:
        logger.warning(f"⚠️ Malformed user metadata for user_id {user_id}: {e}")
        return None


async def fetch_worker_summary(
    store: DataStore, worker_profile_id: str
) -> WorkerSummary | None:
    try:
        row = await select_one(
            store, "worker_profiles", filters=[eq("id", worker_profile_id)]
        )
    except DataStoreError as e:
        logger.warning(
            f"⚠️ Worker profile lookup failed for {worker_profile_id}: {e}"
        )
        return None

    if row is None:
        logger.warning(f"⚠️ Worker profile {worker_profile_id} not found")
        return None

    try:
        return WorkerSummary.model_validate(row)
    except ValidationError as e:
        logger.warning(f"⚠️ Malformed worker profile {worker_profile_id}: {e}")
        return None


async def resolve_assignee(store: DataStore, shift: Shift) -> ShiftWithAssignee:
    base = shift.model_dump()

    match assignee_ref(shift):
        case TeamMemberRef(user_id=user_id):
            logger.debug(f"resolving team member {user_id} for shift {shift.id}")
            metadata = await fetch_user_metadata(store, user_id)
            if metadata is None:
                return ShiftWithAssignee(
                    **base,
                    full_name=UNKNOWN_USER,
                    email="",
                    assignee_type=AssigneeType.TEAM_MEMBER,
                )
            return ShiftWithAssignee(
                **base,
                full_name=display_name(metadata),
                email=metadata.email or "",
                avatar_url=metadata.raw_user_meta_data.get("avatar_url"),
                assignee_type=AssigneeType.TEAM_MEMBER,
            )

        case WorkerRef(worker_profile_id=worker_profile_id):
            logger.debug(
                f"resolving worker profile {worker_profile_id} for shift {shift.id}"
            )
            worker = await fetch_worker_summary(store, worker_profile_id)
            if worker is None:
                return ShiftWithAssignee(
                    **base,
                    full_name=UNKNOWN_WORKER,
                    assignee_type=AssigneeType.WORKER_PROFILE,
                )
            return ShiftWithAssignee(
                **base,
                full_name=worker.name,
                email=worker.phone or None,
                assignee_type=AssigneeType.WORKER_PROFILE,
                worker_profile=worker,
            )

        case Unassigned():
            return ShiftWithAssignee(
                **base,
                full_name=UNASSIGNED,
                assignee_type=AssigneeType.UNASSIGNED,
            )


async def resolve_assignees(
    store: DataStore, shifts: Sequence[Shift | Row]
) -> list[ShiftWithAssignee]:
    """
    Enrich `shifts` with their assignee's display data.

    The result has the same length and order as the input: gather() pairs
    each lookup with its input position, whatever order they complete in.
    """
    records = [
        s if isinstance(s, Shift) else Shift.model_validate(s) for s in shifts
    ]
    return list(
        await asyncio.gather(*(resolve_assignee(store, s) for s in records))
    )
