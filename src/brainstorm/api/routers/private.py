from __future__ import annotations

from typing import List
from fastapi import APIRouter, Depends

from ...domain.models import PrivateExchange, PrivateMessage, PrivateMessageCreate
from ...security.auth import User, get_current_user
from ...services.session_service import SessionService, get_session_service


router = APIRouter(prefix="/sessions", tags=["private"])


@router.get("/{slug}/private", response_model=List[PrivateMessage])
async def private_history(
    slug: str,
    user: User = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> List[PrivateMessage]:
    return await service.private_history(slug, user)


@router.post("/{slug}/private", response_model=PrivateExchange)
async def private_send(
    slug: str,
    req: PrivateMessageCreate,
    user: User = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> PrivateExchange:
    return await service.private_send(slug, user, req.content)
