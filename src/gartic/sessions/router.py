"""Session API: a thin JSON layer over the session service.

Identity, permission and trust decisions belong to the caller (the chat
bot); the endpoints take them as request fields.
"""

from __future__ import annotations

from fastapi import APIRouter

from gartic.sessions import service
from gartic.sessions.schemas import (
    ActiveUserResponse,
    AttemptResponse,
    FinishUploadRequest,
    ForwardResponse,
    LineageStepResponse,
    ModerationRequest,
    NotifyRequest,
    PlayerRequest,
    RoundResponse,
    SessionResponse,
    StartRequest,
    SubmissionResponse,
    SweepResponse,
    UnallocatedResponse,
    UserResponse,
)

router = APIRouter(prefix="/api/v1/sessions", tags=["Sessions"])


# --- Player ---


@router.post("/start", response_model=SessionResponse)
async def start(body: StartRequest) -> SessionResponse:
    """Resume the current session or allocate a round slot."""
    view = await service.start_session(body.external_id, body.name, body.mode, body.nsfw, body.round_no)
    return SessionResponse.from_view(view)


@router.get("/current/{external_id}", response_model=SessionResponse)
async def current(external_id: int) -> SessionResponse:
    view = await service.current_session(external_id)
    return SessionResponse.from_view(view)


@router.post("/reroll", response_model=SessionResponse)
async def reroll(body: PlayerRequest) -> SessionResponse:
    """Cancel the current attempt and join another open round of the same kind."""
    view = await service.reroll_session(body.external_id)
    return SessionResponse.from_view(view)


@router.post("/extend", response_model=AttemptResponse)
async def extend(body: PlayerRequest) -> AttemptResponse:
    attempt = await service.extend_session(body.external_id)
    return AttemptResponse.from_attempt(attempt)


@router.post("/cancel", response_model=AttemptResponse)
async def cancel(body: PlayerRequest) -> AttemptResponse:
    attempt = await service.cancel_session(body.external_id)
    return AttemptResponse.from_attempt(attempt)


@router.post("/upload/begin", response_model=AttemptResponse)
async def upload_begin(body: PlayerRequest) -> AttemptResponse:
    attempt = await service.begin_upload(body.external_id)
    return AttemptResponse.from_attempt(attempt)


@router.post("/upload/finish", response_model=SubmissionResponse)
async def upload_finish(body: FinishUploadRequest) -> SubmissionResponse:
    submission = await service.finish_upload(body.external_id, body.image_ref, trusted=body.trusted)
    return SubmissionResponse.from_submission(submission)


# --- Moderation ---


@router.get("/submissions/by-image/{image_ref}", response_model=AttemptResponse)
async def submission_by_image(image_ref: str) -> AttemptResponse:
    attempt = await service.get_submission(image_ref)
    return AttemptResponse.from_attempt(attempt)


@router.post("/submissions/{attempt_id}/approve", response_model=SubmissionResponse)
async def approve(attempt_id: int, body: ModerationRequest) -> SubmissionResponse:
    submission = await service.approve_submission(
        attempt_id, body.moderator_external_id, body.moderator_name, body.image_ref
    )
    return SubmissionResponse.from_submission(submission)


@router.post("/submissions/{attempt_id}/reject", response_model=AttemptResponse)
async def reject(attempt_id: int, body: ModerationRequest) -> AttemptResponse:
    attempt = await service.reject_submission(
        attempt_id, body.moderator_external_id, body.moderator_name, body.image_ref
    )
    return AttemptResponse.from_attempt(attempt)


@router.post("/forward/{attempt_id}", response_model=ForwardResponse)
async def forward(attempt_id: int) -> ForwardResponse:
    """Forward an approved attempt; idempotent."""
    round_ = await service.forward_attempt(attempt_id)
    if round_ is None:
        return ForwardResponse(round=None, chain_complete=True)
    return ForwardResponse(round=RoundResponse.from_round(round_), chain_complete=False)


# --- Maintenance & preferences ---


@router.post("/sweep", response_model=SweepResponse)
async def sweep() -> SweepResponse:
    return SweepResponse(expired=await service.sweep_expired())


@router.put("/users/notify", response_model=UserResponse)
async def set_notify(body: NotifyRequest) -> UserResponse:
    user = await service.set_notify(body.external_id, body.name, body.notify)
    return UserResponse(id=user.id, external_id=user.external_id, name=user.name, notify=user.notify)


# --- Stats ---


@router.get("/stats/active-users", response_model=list[ActiveUserResponse])
async def active_users() -> list[ActiveUserResponse]:
    """Users currently holding a round slot."""
    rows = await service.active_users()
    return [
        ActiveUserResponse(
            user=UserResponse(id=r.user.id, external_id=r.user.external_id, name=r.user.name, notify=r.user.notify),
            attempt_id=r.attempt.id,
            state=r.attempt.state_type,
            mode=r.round.mode,
            nsfw=r.round.nsfw,
            round_no=r.round.round_no,
        )
        for r in rows
    ]


@router.get("/stats/unallocated", response_model=list[UnallocatedResponse])
async def unallocated() -> list[UnallocatedResponse]:
    """Spare slots per (mode, nsfw, round_no)."""
    rows = await service.unallocated_capacity()
    return [
        UnallocatedResponse(mode=r.mode, nsfw=r.nsfw, round_no=r.round_no, unallocated=r.unallocated)
        for r in rows
    ]


@router.get("/rounds/{round_id}/lineage", response_model=list[LineageStepResponse])
async def round_lineage(round_id: int) -> list[LineageStepResponse]:
    steps = await service.round_lineage(round_id)
    return [LineageStepResponse.from_step(s) for s in steps]
