from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from ...domain.models import (
    ConceptEdge,
    ConceptEdgeCreate,
    ConceptNode,
    ConceptNodeCreate,
    ConceptNodeUpdate,
    MindMap,
)
from ...security.auth import User, get_current_user
from ...services.session_service import SessionService, get_session_service


router = APIRouter(prefix="/sessions", tags=["mindmap"])


@router.get("/{slug}/mindmap", response_model=MindMap)
async def get_mindmap(
    slug: str,
    user: User = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> MindMap:
    return await service.mindmap(slug)


@router.post("/{slug}/mindmap/nodes", response_model=ConceptNode, status_code=status.HTTP_201_CREATED)
async def add_node(
    slug: str,
    req: ConceptNodeCreate,
    user: User = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> ConceptNode:
    return await service.add_node(slug, req)


@router.patch("/{slug}/mindmap/nodes/{node_id}", response_model=ConceptNode)
async def update_node(
    slug: str,
    node_id: str,
    req: ConceptNodeUpdate,
    user: User = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> ConceptNode:
    return await service.update_node(slug, node_id, req)


@router.delete("/{slug}/mindmap/nodes/{node_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_node(
    slug: str,
    node_id: str,
    user: User = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> Response:
    await service.delete_node(slug, node_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{slug}/mindmap/edges", response_model=ConceptEdge, status_code=status.HTTP_201_CREATED)
async def add_edge(
    slug: str,
    req: ConceptEdgeCreate,
    user: User = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> ConceptEdge:
    return await service.add_edge(slug, req)


@router.delete("/{slug}/mindmap/edges/{edge_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_edge(
    slug: str,
    edge_id: str,
    user: User = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> Response:
    await service.delete_edge(slug, edge_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
