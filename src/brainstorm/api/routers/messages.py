from __future__ import annotations

from typing import Any, Dict, List
from fastapi import APIRouter, Depends, status

from ...domain.models import MessageCreate, PostMessageResult
from ...security.auth import User, get_current_user
from ...services.session_service import SessionService, get_session_service


router = APIRouter(prefix="/sessions", tags=["messages"])


@router.get("/{slug}/messages", response_model=List[Dict[str, Any]])
async def list_messages(
    slug: str,
    user: User = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> List[Dict[str, Any]]:
    return await service.list_messages(slug)


@router.post("/{slug}/messages", response_model=PostMessageResult, status_code=status.HTTP_201_CREATED)
async def post_message(
    slug: str,
    req: MessageCreate,
    user: User = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> PostMessageResult:
    return await service.post_message(slug, user, req.content)
