"""Typed failures raised by the session engine.

``NotFound`` and ``StateConflict`` are expected outcomes that reach the
caller. ``StoreTransient`` is retried inside the engine and only escapes
once the retry budget is spent.
"""

from __future__ import annotations


class SessionError(Exception):
    """Base class for all session engine failures."""

    user_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.user_message)


class NotFound(SessionError):
    """No eligible round, attempt or user."""

    user_message = "Not found"


class NoSessionAvailable(NotFound):
    """The allocator found no round with spare capacity for this user."""

    user_message = "No sessions available, try `/start`"


class NoActiveSession(NotFound):
    """The user holds no attempt in the state the operation expects."""

    user_message = "No active session found"


class UserNotFound(NotFound):
    def __init__(self, external_id: int) -> None:
        self.external_id = external_id
        super().__init__(f"User {external_id} not found")


class RoundNotFound(NotFound):
    def __init__(self, round_id: int) -> None:
        self.round_id = round_id
        super().__init__(f"Round {round_id} not found")


class AttemptNotFound(NotFound):
    def __init__(self, attempt_id: int | str) -> None:
        self.attempt_id = attempt_id
        super().__init__(f"Attempt {attempt_id} not found")


class StateConflict(SessionError):
    """The attempt was not found in the expected prior state."""

    user_message = "No active session found"


class StoreTransient(SessionError):
    """The store could not commit after exhausting retries."""

    user_message = "Internal server error"


class UnknownMode(ValueError):
    def __init__(self, mode: str) -> None:
        self.mode = mode
        super().__init__(f"Unknown game mode: {mode}")


class RoundOutOfRange(ValueError):
    def __init__(self, mode: str, round_no: int, last_round: int) -> None:
        self.mode = mode
        self.round_no = round_no
        super().__init__(f"Game mode {mode} has no round {round_no + 1} (last is {last_round + 1})")
