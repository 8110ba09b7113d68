"""Pydantic schemas for the session API."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from gartic.db.models import Attempt, Round
    from gartic.sessions.lineage import LineageStep
    from gartic.sessions.service import SessionView, Submission


# --- Requests ---


class StartRequest(BaseModel):
    external_id: int
    name: str = Field(max_length=100)
    mode: str
    nsfw: bool = False
    round_no: int = Field(default=0, ge=0)


class PlayerRequest(BaseModel):
    external_id: int


class FinishUploadRequest(BaseModel):
    external_id: int
    image_ref: str = Field(min_length=1, max_length=128)
    trusted: bool = False


class ModerationRequest(BaseModel):
    moderator_external_id: int
    moderator_name: str = Field(default="", max_length=100)
    image_ref: str | None = Field(default=None, min_length=1, max_length=128)


class NotifyRequest(BaseModel):
    external_id: int
    name: str = Field(max_length=100)
    notify: Literal["disabled", "once", "always"]


# --- Responses ---


class AttemptResponse(BaseModel):
    id: int
    user_id: int
    round_id: int
    state: str
    until: datetime | None = None
    since: datetime | None = None
    moderator_id: int | None = None
    image_ref: str | None = None
    created_at: datetime

    @classmethod
    def from_attempt(cls, attempt: Attempt) -> AttemptResponse:
        is_active = attempt.state_type == "active"
        return cls(
            id=attempt.id,
            user_id=attempt.user_id,
            round_id=attempt.round_id,
            state=attempt.state_type,
            until=attempt.active_until if is_active else None,
            since=None if is_active else attempt.state_at,
            moderator_id=attempt.moderator_id,
            image_ref=attempt.image_ref,
            created_at=attempt.created_at,
        )


class RoundResponse(BaseModel):
    id: int
    mode: str
    nsfw: bool
    round_no: int
    multiplex: int
    origin_attempt_id: int | None = None
    created_at: datetime

    @classmethod
    def from_round(cls, round_: Round) -> RoundResponse:
        return cls(
            id=round_.id,
            mode=round_.mode,
            nsfw=round_.nsfw,
            round_no=round_.round_no,
            multiplex=round_.multiplex,
            origin_attempt_id=round_.origin_attempt_id,
            created_at=round_.created_at,
        )


class LineageStepResponse(BaseModel):
    attempt_id: int
    round_id: int
    round_no: int
    user_id: int
    image_ref: str

    @classmethod
    def from_step(cls, step: LineageStep) -> LineageStepResponse:
        return cls(
            attempt_id=step.attempt_id,
            round_id=step.round_id,
            round_no=step.round_no,
            user_id=step.user_id,
            image_ref=step.image_ref,
        )


class SessionResponse(BaseModel):
    attempt: AttemptResponse
    round: RoundResponse
    lineage: list[LineageStepResponse]
    prompt: str
    resumed: bool

    @classmethod
    def from_view(cls, view: SessionView) -> SessionResponse:
        return cls(
            attempt=AttemptResponse.from_attempt(view.attempt),
            round=RoundResponse.from_round(view.round),
            lineage=[LineageStepResponse.from_step(s) for s in view.lineage],
            prompt=view.prompt,
            resumed=view.resumed,
        )


class SubmissionResponse(BaseModel):
    attempt: AttemptResponse
    forwarded: RoundResponse | None = None
    notified: list[int] = []

    @classmethod
    def from_submission(cls, submission: Submission) -> SubmissionResponse:
        return cls(
            attempt=AttemptResponse.from_attempt(submission.attempt),
            forwarded=RoundResponse.from_round(submission.forwarded) if submission.forwarded else None,
            notified=list(submission.notified),
        )


class ForwardResponse(BaseModel):
    round: RoundResponse | None = None
    chain_complete: bool


class SweepResponse(BaseModel):
    expired: int


class UserResponse(BaseModel):
    id: int
    external_id: int
    name: str
    notify: str


class ActiveUserResponse(BaseModel):
    user: UserResponse
    attempt_id: int
    state: str
    mode: str
    nsfw: bool
    round_no: int


class UnallocatedResponse(BaseModel):
    mode: str
    nsfw: bool
    round_no: int
    unallocated: int
