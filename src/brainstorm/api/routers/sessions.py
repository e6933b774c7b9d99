from __future__ import annotations

from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Response, status

from ...domain.models import (
    EndSessionRequest,
    EndSessionResult,
    Participant,
    Session,
    SessionCreate,
    SessionSummary,
    SessionView,
)
from ...security.auth import User, get_current_user
from ...services.session_service import SessionService, get_session_service


router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.post("", response_model=Session, status_code=status.HTTP_201_CREATED)
async def create_session(
    req: SessionCreate,
    user: User = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> Session:
    return await service.create_session(user, req)


@router.get("/{slug}", response_model=SessionView)
async def open_session(
    slug: str,
    user: User = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> SessionView:
    return await service.open_session(slug, user)


@router.get("/{slug}/participants", response_model=List[Participant])
async def list_participants(
    slug: str,
    user: User = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> List[Participant]:
    return await service.participants(slug)


@router.post("/{slug}/end", response_model=EndSessionResult)
async def end_session(
    slug: str,
    req: Optional[EndSessionRequest] = None,
    user: User = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> EndSessionResult:
    snapshot = req.snapshot_ref if req else None
    return await service.end_session(slug, user, snapshot=snapshot)


@router.get("/{slug}/summary", response_model=SessionSummary)
async def get_summary(
    slug: str,
    user: User = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> SessionSummary:
    summary = await service.get_summary(slug)
    if summary is None:
        raise HTTPException(status_code=404, detail="Summary not found")
    return summary


@router.delete("/{slug}/summary", status_code=status.HTTP_204_NO_CONTENT)
async def delete_summary(
    slug: str,
    user: User = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> Response:
    if not await service.delete_summary(slug, user):
        raise HTTPException(status_code=404, detail="Summary not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
