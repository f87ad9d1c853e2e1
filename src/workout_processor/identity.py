"""Owning-user resolution.

Two event shapes carry identity differently. When the event has a ``userId``
it applies to every workout as-is. Otherwise the usernames on the event
(batch-level, overridden per workout) are resolved with a single lookup.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from .contracts import ParsedWorkoutEvent
from .resolution import Candidate
from .store import UsernameQuery, WorkoutStore

IdentitySource = Literal["inline", "lookup"]


@dataclass(frozen=True)
class OwnerResolution:
    source: IdentitySource
    user_ids: dict[int, int]
    unresolved: dict[int, str | None]


async def resolve_owners(
    event: ParsedWorkoutEvent,
    candidates: Sequence[Candidate],
    store: WorkoutStore,
) -> OwnerResolution:
    """Map candidate position to owning user id.

    ``unresolved`` maps each position without an owner to the username that
    could not be found.
    """
    if event.user_id is not None:
        return OwnerResolution(
            source="inline",
            user_ids={candidate.position: event.user_id for candidate in candidates},
            unresolved={},
        )

    usernames = {
        candidate.position: event.owner_username(candidate.workout)
        for candidate in candidates
    }
    distinct = tuple(sorted({name for name in usernames.values() if name}))
    found = await store.find_user_ids(UsernameQuery(usernames=distinct)) if distinct else {}

    user_ids: dict[int, int] = {}
    unresolved: dict[int, str | None] = {}
    for position, username in usernames.items():
        user_id = found.get(username) if username else None
        if user_id is None:
            unresolved[position] = username
        else:
            user_ids[position] = user_id
    return OwnerResolution(source="lookup", user_ids=user_ids, unresolved=unresolved)
