"""
DocSpace Flow Hub - Projects Router

A project binds a display title to one DocSpace room. The room is fixed at
creation; flows created for the project carry the room id.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from typing import Any, Dict, Optional, Tuple
import logging

from routes.auth import http_error, require_user
from services.docspace_client import profile_display_name
from services.errors import FlowHubError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/projects", tags=["projects"])

# Services - set by main app
store = None
client = None


def set_dependencies(flow_store, docspace_client):
    global store, client
    store = flow_store
    client = docspace_client


# ==================== MODELS ====================

class ProjectCreate(BaseModel):
    title: str
    roomId: str
    roomUrl: Optional[str] = None


class ProjectUpdate(BaseModel):
    title: Optional[str] = None
    roomUrl: Optional[str] = None


def _project_or_404(project_id: str) -> Dict[str, Any]:
    project = store.get_project(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail={"error": "Project not found", "details": project_id})
    return project


# ==================== ENDPOINTS ====================

@router.get("")
async def list_projects(includeArchived: bool = Query(True)):
    return {"projects": store.list_projects(include_archived=includeArchived)}


@router.post("")
async def create_project(
    req: ProjectCreate,
    user: Tuple[Dict[str, Any], str] = Depends(require_user),
):
    """Register a project for a room the caller can open."""
    _, token = user
    try:
        room = await client.get_room_info(req.roomId.strip(), auth=token) or {}
    except FlowHubError as e:
        if e.status_code in (403, 404):
            raise HTTPException(status_code=403, detail={"error": "No access to this room", "details": e.details})
        raise http_error(e)

    project = store.create_project(
        title=req.title or room.get("title") or "",
        room_id=req.roomId,
        room_url=req.roomUrl or room.get("webUrl"),
    )
    if project is None:
        raise HTTPException(status_code=400, detail={"error": "title and roomId are required", "details": None})
    logger.info("Project %s created for room %s", project["id"], project["roomId"])
    return {"project": project}


@router.get("/{project_id}")
async def get_project(project_id: str):
    project = _project_or_404(project_id)
    return {"project": project, "flows": store.list_flows_for_room(project["roomId"])}


@router.put("/{project_id}")
async def update_project(
    project_id: str,
    req: ProjectUpdate,
    user: Tuple[Dict[str, Any], str] = Depends(require_user),
):
    _project_or_404(project_id)
    return {"project": store.update_project(project_id, title=req.title, room_url=req.roomUrl)}


@router.post("/{project_id}/archive")
async def archive_project(
    project_id: str,
    user: Tuple[Dict[str, Any], str] = Depends(require_user),
):
    profile, _ = user
    _project_or_404(project_id)
    project = store.archive_project(
        project_id, actor_user_id=str(profile.get("id") or ""), actor_name=profile_display_name(profile)
    )
    return {"project": project}


@router.post("/{project_id}/unarchive")
async def unarchive_project(
    project_id: str,
    user: Tuple[Dict[str, Any], str] = Depends(require_user),
):
    _project_or_404(project_id)
    return {"project": store.unarchive_project(project_id)}


@router.delete("/{project_id}")
async def delete_project(
    project_id: str,
    user: Tuple[Dict[str, Any], str] = Depends(require_user),
):
    """Remove the project record. Its room and flows are left untouched."""
    if not store.delete_project(project_id):
        raise HTTPException(status_code=404, detail={"error": "Project not found", "details": project_id})
    return {"ok": True}
