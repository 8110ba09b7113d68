"""Attempt state machine: the tagged state union and its legal transitions.

State progression:

    Active -> Active (extend) | Cancelled | Expired | Uploading
    Uploading -> Approved (trusted submitter) | Pending
    Pending -> Approved | Rejected

Cancelled, Expired, Approved and Rejected are terminal. Each variant carries
exactly the fields that exist in that state; rows in ``attempts`` store the
variant as a ``state_type`` tag plus a fixed set of nullable columns, and the
two are converted with ``state_columns`` / ``state_from_columns``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Union

from gartic.sessions.errors import StateConflict


class StateType(str, enum.Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    UPLOADING = "uploading"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Active:
    until: datetime

    kind: ClassVar[StateType] = StateType.ACTIVE


@dataclass(frozen=True)
class Cancelled:
    when: datetime

    kind: ClassVar[StateType] = StateType.CANCELLED


@dataclass(frozen=True)
class Expired:
    when: datetime

    kind: ClassVar[StateType] = StateType.EXPIRED


@dataclass(frozen=True)
class Uploading:
    since: datetime

    kind: ClassVar[StateType] = StateType.UPLOADING


@dataclass(frozen=True)
class Pending:
    since: datetime
    image_ref: str

    kind: ClassVar[StateType] = StateType.PENDING


@dataclass(frozen=True)
class Approved:
    when: datetime
    moderator_id: int
    image_ref: str

    kind: ClassVar[StateType] = StateType.APPROVED


@dataclass(frozen=True)
class Rejected:
    when: datetime
    moderator_id: int
    image_ref: str

    kind: ClassVar[StateType] = StateType.REJECTED


AttemptState = Union[Active, Cancelled, Expired, Uploading, Pending, Approved, Rejected]
_STATE_CLASSES = (Active, Cancelled, Expired, Uploading, Pending, Approved, Rejected)

# States that count against a round's multiplex capacity.
OCCUPYING_STATES: frozenset[StateType] = frozenset({
    StateType.ACTIVE,
    StateType.UPLOADING,
    StateType.PENDING,
})

TERMINAL_STATES: frozenset[StateType] = frozenset({
    StateType.CANCELLED,
    StateType.EXPIRED,
    StateType.APPROVED,
    StateType.REJECTED,
})

VALID_TRANSITIONS: dict[StateType, frozenset[StateType]] = {
    StateType.ACTIVE: frozenset({
        StateType.ACTIVE,
        StateType.CANCELLED,
        StateType.EXPIRED,
        StateType.UPLOADING,
    }),
    StateType.UPLOADING: frozenset({StateType.APPROVED, StateType.PENDING}),
    StateType.PENDING: frozenset({StateType.APPROVED, StateType.REJECTED}),
    StateType.CANCELLED: frozenset(),
    StateType.EXPIRED: frozenset(),
    StateType.APPROVED: frozenset(),
    StateType.REJECTED: frozenset(),
}


def validate_transition(current: StateType | str, target: StateType | str) -> None:
    """Validate a state transition. Raises StateConflict if invalid."""
    current = StateType(current)
    target = StateType(target)
    if target not in VALID_TRANSITIONS[current]:
        valid = sorted(s.value for s in VALID_TRANSITIONS[current])
        raise StateConflict(
            f"Invalid transition: {current.value} -> {target.value}. "
            f"Valid transitions: {valid}"
        )


def state_columns(state: AttemptState) -> dict[str, Any]:
    """Flatten a state variant into ``attempts`` column values.

    Every column is always present so that writing a state clears whatever
    the previous variant left behind.
    """
    if not isinstance(state, _STATE_CLASSES):
        raise TypeError(f"Not an attempt state: {state!r}")
    columns: dict[str, Any] = {
        "state_type": state.kind.value,
        "active_until": None,
        "state_at": None,
        "moderator_id": None,
        "image_ref": None,
    }
    if isinstance(state, Active):
        columns["active_until"] = state.until
    elif isinstance(state, (Cancelled, Expired)):
        columns["state_at"] = state.when
    elif isinstance(state, Uploading):
        columns["state_at"] = state.since
    elif isinstance(state, Pending):
        columns["state_at"] = state.since
        columns["image_ref"] = state.image_ref
    else:
        columns["state_at"] = state.when
        columns["moderator_id"] = state.moderator_id
        columns["image_ref"] = state.image_ref
    return columns


def state_from_columns(
    state_type: str,
    active_until: datetime | None,
    state_at: datetime | None,
    moderator_id: int | None,
    image_ref: str | None,
) -> AttemptState:
    """Rebuild the state variant from stored column values."""
    kind = StateType(state_type)
    if kind is StateType.ACTIVE:
        return Active(until=_required(active_until, kind, "active_until"))
    when = _required(state_at, kind, "state_at")
    if kind is StateType.CANCELLED:
        return Cancelled(when=when)
    if kind is StateType.EXPIRED:
        return Expired(when=when)
    if kind is StateType.UPLOADING:
        return Uploading(since=when)
    ref = _required(image_ref, kind, "image_ref")
    if kind is StateType.PENDING:
        return Pending(since=when, image_ref=ref)
    moderator = _required(moderator_id, kind, "moderator_id")
    if kind is StateType.APPROVED:
        return Approved(when=when, moderator_id=moderator, image_ref=ref)
    return Rejected(when=when, moderator_id=moderator, image_ref=ref)


def _required(value: Any, kind: StateType, column: str) -> Any:
    if value is None:
        raise ValueError(f"Attempt in state {kind.value} is missing {column}")
    return value
