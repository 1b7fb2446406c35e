"""
HTTP interface of the episode pipeline.

Caller identity arrives in ``X-User-Id`` and ``X-Organization-Id`` headers
set by the identity provider in front of this service and is trusted as
already verified. Resources of another organization are reported as not
found. Malformed feedback is a 422; feedback the episode or note cannot
take in its current state is a 409.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core.errors import FeedbackRejected, InvalidFeedback, NotFoundError
from ..core.pipeline import EpisodePipeline
from ..storage.models import FeedbackNote, NoteScope, to_iso


@dataclass(frozen=True)
class Caller:
    user_id: str
    organization_id: str


def require_caller(
    x_user_id: Optional[str] = Header(None),
    x_organization_id: Optional[str] = Header(None),
) -> Caller:
    if not x_user_id or not x_organization_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing caller identity")
    return Caller(user_id=x_user_id, organization_id=x_organization_id)


def get_pipeline(request: Request) -> EpisodePipeline:
    return request.app.state.pipeline


class FeedbackIn(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    note: Optional[str] = None
    scope: NoteScope = NoteScope.NEXT_EPISODE


router = APIRouter()


def _note_body(note: FeedbackNote) -> dict:
    return {
        "id": note.id,
        "episode_id": note.episode_id,
        "rating": note.rating,
        "note": note.note,
        "scope": note.scope.value,
        "status": note.status.value,
        "created_at": to_iso(note.created_at),
    }


@router.post("/projects/{project_id}/generate-now")
async def generate_now(
    project_id: str,
    caller: Caller = Depends(require_caller),
    pipeline: EpisodePipeline = Depends(get_pipeline),
):
    episode = await pipeline.generate_now(project_id, organization_id=caller.organization_id)
    view = await asyncio.to_thread(pipeline.episode_status, episode.id)
    return view.as_dict()


@router.get("/episodes/{episode_id}/status")
def episode_status(
    episode_id: str,
    caller: Caller = Depends(require_caller),
    pipeline: EpisodePipeline = Depends(get_pipeline),
):
    return pipeline.episode_status(episode_id, organization_id=caller.organization_id).as_dict()


@router.post("/episodes/{episode_id}/feedback", status_code=status.HTTP_201_CREATED)
def submit_feedback(
    episode_id: str,
    payload: FeedbackIn,
    caller: Caller = Depends(require_caller),
    pipeline: EpisodePipeline = Depends(get_pipeline),
):
    note = pipeline.submit_feedback(
        episode_id,
        caller.user_id,
        rating=payload.rating,
        note=payload.note,
        scope=payload.scope,
        organization_id=caller.organization_id,
    )
    return _note_body(note)


@router.post("/feedback/{note_id}/dismiss")
def dismiss_feedback(
    note_id: str,
    caller: Caller = Depends(require_caller),
    pipeline: EpisodePipeline = Depends(get_pipeline),
):
    return _note_body(pipeline.dismiss_feedback(note_id, organization_id=caller.organization_id))


def create_app(pipeline: EpisodePipeline) -> FastAPI:
    app = FastAPI(title="Futures Pipeline API")
    app.state.pipeline = pipeline
    app.include_router(router)

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(FeedbackRejected)
    async def feedback_rejected(request: Request, exc: FeedbackRejected):
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    @app.exception_handler(InvalidFeedback)
    async def invalid_feedback(request: Request, exc: InvalidFeedback):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    return app
