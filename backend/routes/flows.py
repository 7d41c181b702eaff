"""
DocSpace Flow Hub - Flows Router

Flow creation (single and bulk), listing, audit events and state transitions.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Tuple
import logging

from routes.auth import http_error, require_user
from services import portal_config
from services.docspace_client import profile_display_name
from services.errors import FlowHubError
from services.flow_store import FlowKind, normalize_email

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/flows", tags=["flows"])

# Services - set by main app
store = None
client = None
provisioner = None
bulk_creator = None
status_resolver = None


def set_dependencies(flow_store, docspace_client, link_provisioner, bulk_flow_creator, flow_status_resolver):
    global store, client, provisioner, bulk_creator, status_resolver
    store = flow_store
    client = docspace_client
    provisioner = link_provisioner
    bulk_creator = bulk_flow_creator
    status_resolver = flow_status_resolver


# ==================== MODELS ====================

class FromTemplateRequest(BaseModel):
    templateFileId: str
    projectId: Optional[str] = None
    recipientEmails: List[str] = Field(default_factory=list)
    dueDate: Optional[str] = None
    kind: Optional[str] = None


class BulkRequest(BaseModel):
    templateFileId: str
    count: int = 1
    projectId: Optional[str] = None
    roomId: Optional[str] = None
    continueOnError: bool = False


class TransitionRequest(BaseModel):
    expectedVersion: Optional[int] = None
    reason: Optional[str] = None


class CompleteRequest(TransitionRequest):
    resultFileId: Optional[str] = None
    resultFileTitle: Optional[str] = None
    resultFileUrl: Optional[str] = None


class SyncRequest(BaseModel):
    flowIds: List[str] = Field(default_factory=list)


# ==================== HELPERS ====================

def _flow_or_404(flow_id: str) -> Dict[str, Any]:
    flow = store.get_flow(flow_id)
    if flow is None:
        raise HTTPException(status_code=404, detail={"error": "Flow not found", "details": flow_id})
    return flow


def _can_act(flow: Dict[str, Any], profile: Dict[str, Any]) -> bool:
    """Creators and recipients may act on a flow."""
    if flow.get("createdByUserId") == str(profile.get("id") or ""):
        return True
    email = normalize_email(profile.get("email"))
    return bool(email) and email in (flow.get("recipientEmails") or [])


def _transition_response(before: Dict[str, Any], after: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {"flow": after, "changed": bool(after) and after.get("version") != before.get("version")}


# ==================== LISTING ====================

@router.get("")
async def list_flows(
    userId: str = Query(None),
    email: Optional[str] = Query(None),
):
    """Flows created by the user or addressed to their email, newest first."""
    if not (userId or "").strip():
        raise HTTPException(status_code=400, detail={"error": "userId is required", "details": None})
    return {"flows": store.list_flows_for_user(userId, email)}


@router.get("/group/{group_id}")
async def list_group_flows(group_id: str):
    """All flows of one batch, in creation order."""
    return {"groupId": group_id, "flows": store.list_flows_for_group(group_id)}


def _readable_flow(flow_id: str, profile: Dict[str, Any]) -> Dict[str, Any]:
    flow = _flow_or_404(flow_id)
    if not _can_act(flow, profile):
        raise HTTPException(status_code=403, detail={"error": "Not allowed to view this flow", "details": None})
    return flow


@router.get("/{flow_id}")
async def get_flow(
    flow_id: str,
    user: Tuple[Dict[str, Any], str] = Depends(require_user),
):
    return {"flow": _readable_flow(flow_id, user[0])}


@router.get("/{flow_id}/events")
async def get_flow_events(
    flow_id: str,
    user: Tuple[Dict[str, Any], str] = Depends(require_user),
):
    """Audit trail of one flow (most recent 200 events)."""
    _readable_flow(flow_id, user[0])
    return {"flowId": flow_id, "events": store.get_events(flow_id)}


# ==================== CREATION ====================

@router.post("/from-template")
async def create_from_template(
    req: FromTemplateRequest,
    user: Tuple[Dict[str, Any], str] = Depends(require_user),
):
    """
    Create a flow that points recipients at the template's fill-out link.

    The template gets a primary external FillForms link titled
    "Link to fill out" when it does not carry one yet.
    """
    profile, token = user
    template_id = req.templateFileId.strip()
    if not template_id:
        raise HTTPException(status_code=400, detail={"error": "templateFileId is required", "details": None})

    room_id = None
    if req.projectId:
        project = store.get_project(req.projectId)
        if project is None:
            raise HTTPException(status_code=404, detail={"error": "Project not found", "details": req.projectId})
        room_id = project["roomId"]

    try:
        template = await client.get_file_info(template_id) or {}
    except FlowHubError as e:
        if e.status_code == 404:
            raise HTTPException(status_code=404, detail={"error": "Template file not found", "details": e.details})
        raise http_error(e)

    try:
        fill_link = await provisioner.find_fill_link(template_id, auth=token)
    except FlowHubError as e:
        logger.info("Fill link lookup for template %s failed (%s); provisioning", template_id, e.status_code)
        fill_link = None

    try:
        if fill_link is None or "fill out" not in fill_link.title.lower():
            fill_link = await provisioner.ensure_link(
                template_id, access="FillForms", title=portal_config.FILL_LINK_TITLE, auth=token
            ) or fill_link
    except FlowHubError as e:
        raise http_error(e)

    if fill_link is None or not fill_link.share_link:
        raise HTTPException(
            status_code=500, detail={"error": "Unable to obtain fill-out link for template", "details": None}
        )

    flow = store.create_flow(
        template_file_id=template_id,
        created_by_user_id=str(profile.get("id") or ""),
        kind=req.kind or FlowKind.APPROVAL.value,
        template_title=template.get("title"),
        project_room_id=room_id,
        created_by_name=profile_display_name(profile),
        recipient_emails=req.recipientEmails,
        due_date=req.dueDate,
        open_url=fill_link.share_link,
        link_request_token=fill_link.request_token,
    )
    if flow is None:
        raise HTTPException(status_code=400, detail={"error": "Flow could not be created", "details": None})
    return {"flow": flow}


@router.post("/bulk")
async def create_bulk(
    req: BulkRequest,
    user: Tuple[Dict[str, Any], str] = Depends(require_user),
):
    """Create `count` (1-50) link flows from one template. Returns a partial-results report."""
    profile, token = user
    try:
        result = await bulk_creator.bulk_create(
            req.count,
            req.templateFileId,
            user=profile,
            project_id=req.projectId,
            room_id=req.roomId,
            auth=token,
            continue_on_error=req.continueOnError,
        )
    except FlowHubError as e:
        raise http_error(e)
    return result.to_dict()


@router.post("/sync")
async def sync_flows(
    req: SyncRequest,
    user: Tuple[Dict[str, Any], str] = Depends(require_user),
):
    """Re-check the caller's flows (or the listed ones) against DocSpace."""
    profile, token = user
    flows = store.list_flows_for_user(str(profile.get("id") or ""), profile.get("email"))
    if req.flowIds:
        wanted = set(req.flowIds)
        flows = [f for f in flows if f["id"] in wanted]
    summary = await status_resolver.resolve(flows, auth=token)
    return {"ok": True, "summary": summary}


# ==================== TRANSITIONS ====================

async def _apply(flow_id: str, profile: Dict[str, Any], action) -> Dict[str, Any]:
    before = _flow_or_404(flow_id)
    if not _can_act(before, profile):
        raise HTTPException(status_code=403, detail={"error": "Not allowed to change this flow", "details": None})
    try:
        after = action(str(profile.get("id") or ""), profile_display_name(profile))
    except FlowHubError as e:
        raise http_error(e)
    return _transition_response(before, after)


@router.post("/{flow_id}/cancel")
async def cancel_flow(
    flow_id: str,
    req: TransitionRequest = None,
    user: Tuple[Dict[str, Any], str] = Depends(require_user),
):
    req = req or TransitionRequest()
    return await _apply(flow_id, user[0], lambda uid, name: store.cancel_flow(
        flow_id, actor_user_id=uid, actor_name=name, reason=req.reason, expected_version=req.expectedVersion,
    ))


@router.post("/{flow_id}/reopen")
async def reopen_flow(
    flow_id: str,
    req: TransitionRequest = None,
    user: Tuple[Dict[str, Any], str] = Depends(require_user),
):
    req = req or TransitionRequest()
    return await _apply(flow_id, user[0], lambda uid, name: store.reopen_flow(
        flow_id, actor_user_id=uid, actor_name=name, expected_version=req.expectedVersion,
    ))


@router.post("/{flow_id}/complete")
async def complete_flow(
    flow_id: str,
    req: CompleteRequest = None,
    user: Tuple[Dict[str, Any], str] = Depends(require_user),
):
    req = req or CompleteRequest()
    return await _apply(flow_id, user[0], lambda uid, name: store.complete_flow(
        flow_id,
        actor_user_id=uid,
        actor_name=name,
        result_file_id=req.resultFileId,
        result_file_title=req.resultFileTitle,
        result_file_url=req.resultFileUrl,
        expected_version=req.expectedVersion,
    ))


@router.post("/{flow_id}/archive")
async def archive_flow(
    flow_id: str,
    req: TransitionRequest = None,
    user: Tuple[Dict[str, Any], str] = Depends(require_user),
):
    req = req or TransitionRequest()
    return await _apply(flow_id, user[0], lambda uid, name: store.archive_flow(
        flow_id, actor_user_id=uid, actor_name=name, expected_version=req.expectedVersion,
    ))


@router.post("/{flow_id}/unarchive")
async def unarchive_flow(
    flow_id: str,
    req: TransitionRequest = None,
    user: Tuple[Dict[str, Any], str] = Depends(require_user),
):
    req = req or TransitionRequest()
    return await _apply(flow_id, user[0], lambda uid, name: store.unarchive_flow(
        flow_id, actor_user_id=uid, actor_name=name, expected_version=req.expectedVersion,
    ))
