"""
DocSpace Flow Hub - Auth Router

DocSpace login plus the request identity helpers the other routers use.
Users authenticate against DocSpace; the hub keeps no accounts of its own and
resolves the caller from the Authorization header on every request.
"""

from fastapi import APIRouter, Header, HTTPException
from pydantic import BaseModel
from typing import Any, Dict, Optional, Tuple
import logging

from services.docspace_client import DocSpaceClient, profile_display_name
from services.errors import FlowHubError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

# DocSpace client and room resolver - set by main app
client: Optional[DocSpaceClient] = None
room_resolver = None


def set_dependencies(docspace_client, resolver=None):
    global client, room_resolver
    client = docspace_client
    room_resolver = resolver


def http_error(e: FlowHubError) -> HTTPException:
    """Translate a service error, passing upstream status and body through."""
    status = e.status_code if isinstance(e.status_code, int) and 400 <= e.status_code < 600 else 500
    return HTTPException(status_code=status, detail=e.to_dict())


def public_user(profile: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(profile.get("id") or ""),
        "displayName": profile_display_name(profile),
        "email": profile.get("email"),
    }


async def require_user(authorization: Optional[str] = Header(None)) -> Tuple[Dict[str, Any], str]:
    """FastAPI dependency returning (profile, token) for the calling user."""
    token = (authorization or "").strip()
    if not token:
        raise HTTPException(status_code=401, detail={"error": "Authorization token is required", "details": None})
    try:
        profile = await client.get_self_profile(token) or {}
    except FlowHubError as e:
        if e.status_code in (401, 403):
            raise HTTPException(status_code=401, detail={"error": "Invalid user token", "details": e.details})
        raise http_error(e)
    if not str(profile.get("id") or "").strip():
        raise HTTPException(status_code=401, detail={"error": "Invalid user token", "details": None})
    return profile, token


# ==================== MODELS ====================

class LoginRequest(BaseModel):
    email: str
    password: str


# ==================== ENDPOINTS ====================

@router.post("/login")
async def login(req: LoginRequest):
    """Authenticate against DocSpace and return the user token."""
    if not req.email.strip() or not req.password:
        raise HTTPException(status_code=400, detail={"error": "Email and password are required", "details": None})
    try:
        token = await client.authenticate_user(req.email.strip(), req.password)
        if not token:
            raise HTTPException(status_code=401, detail={"error": "DocSpace authentication failed", "details": None})
        profile = await client.get_self_profile(token) or {}
    except FlowHubError as e:
        raise http_error(e)

    forms_room = None
    if room_resolver is not None:
        try:
            forms_room = await room_resolver.resolve_room(auth=token)
        except FlowHubError as e:
            logger.info("Forms room not visible to %s: %s", profile.get("id"), e.message)

    logger.info("User %s signed in", profile.get("id"))
    return {"token": token, "user": public_user(profile), "formsRoom": forms_room}


@router.get("/me")
async def get_me(authorization: Optional[str] = Header(None)):
    """Profile of the calling user."""
    profile, _ = await require_user(authorization)
    return {"user": public_user(profile)}
