"""
DocSpace Flow Hub - Contacts Router

Per-user address book used to pick flow recipients. Contacts are visible to
their owner only; anyone else gets a 404.
"""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Tuple

from routes.auth import require_user

router = APIRouter(prefix="/contacts", tags=["contacts"])

# Flow store - set by main app
store = None


def set_dependencies(flow_store):
    global store
    store = flow_store


class ContactCreate(BaseModel):
    email: str
    name: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class ContactUpdate(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    tags: Optional[List[str]] = None


def _owner(user: Tuple[Dict[str, Any], str]) -> str:
    return str(user[0].get("id") or "")


@router.get("")
async def list_contacts(user: Tuple[Dict[str, Any], str] = Depends(require_user)):
    return {"contacts": store.list_contacts_for_user(_owner(user))}


@router.post("")
async def create_contact(req: ContactCreate, user: Tuple[Dict[str, Any], str] = Depends(require_user)):
    contact = store.create_contact(_owner(user), req.email, name=req.name, tags=req.tags)
    if contact is None:
        raise HTTPException(status_code=400, detail={"error": "email is required", "details": None})
    return {"contact": contact}


@router.put("/{contact_id}")
async def update_contact(
    contact_id: str,
    req: ContactUpdate,
    user: Tuple[Dict[str, Any], str] = Depends(require_user),
):
    contact = store.update_contact(_owner(user), contact_id, name=req.name, email=req.email, tags=req.tags)
    if contact is None:
        raise HTTPException(status_code=404, detail={"error": "Contact not found", "details": contact_id})
    return {"contact": contact}


@router.delete("/{contact_id}")
async def delete_contact(contact_id: str, user: Tuple[Dict[str, Any], str] = Depends(require_user)):
    if not store.delete_contact(_owner(user), contact_id):
        raise HTTPException(status_code=404, detail={"error": "Contact not found", "details": contact_id})
    return {"ok": True}
