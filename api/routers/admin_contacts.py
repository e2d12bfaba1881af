"""Admin contacts, group aliases, the live group cache and the combined target list."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from context import AppContext, get_context
from recipient_resolver import InvalidRecipientError, to_user_jid
from schemas import ContactRequest, GroupAliasRequest
from security import require_admin_key, require_connected

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin-contacts"], dependencies=[Depends(require_admin_key)])


@router.get("/contacts")
def list_contacts(ctx: AppContext = Depends(get_context)) -> dict:
    store = ctx.contacts.read()
    return {
        "ok": True,
        "updated_at": store["updated_at"],
        "contacts": store["contacts"],
        "groups": store["groups"],
    }


@router.post("/contacts")
def upsert_contact(body: ContactRequest, ctx: AppContext = Depends(get_context)) -> dict:
    contact: dict = {"name": body.name, "tags": body.tags}
    if body.msisdn and body.msisdn.strip():
        contact["msisdn"] = body.msisdn.strip()
    if body.jid and body.jid.strip():
        contact["jid"] = body.jid.strip()
    if "jid" not in contact and "msisdn" in contact:
        try:
            contact["jid"] = to_user_jid(contact["msisdn"], ctx.country_code)
        except InvalidRecipientError as e:
            raise HTTPException(status_code=400, detail={"error": str(e)}) from None
    saved = ctx.contacts.upsert_contact(contact)
    return {"ok": True, "updated_at": saved["updated_at"], "contact": contact}


@router.delete("/contacts/{name}")
def delete_contact(name: str, ctx: AppContext = Depends(get_context)) -> dict:
    removed = ctx.contacts.delete_contact(name)
    return {"ok": True, "removed": removed}


@router.post("/groups")
def upsert_group_alias(body: GroupAliasRequest, ctx: AppContext = Depends(get_context)) -> dict:
    try:
        saved = ctx.contacts.upsert_group_alias(body.name, body.jid)
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"error": str(e)}) from None
    return {"ok": True, "updated_at": saved["updated_at"]}


@router.delete("/groups/{name}")
def delete_group_alias(name: str, ctx: AppContext = Depends(get_context)) -> dict:
    removed = ctx.contacts.delete_group_alias(name)
    return {"ok": True, "removed": removed}


@router.post("/groups/refresh", dependencies=[Depends(require_connected)])
async def refresh_groups(ctx: AppContext = Depends(get_context)) -> dict:
    try:
        result = await ctx.refresh_groups()
    except Exception as e:
        logger.exception("group refresh failed")
        raise HTTPException(status_code=502, detail={"error": f"Group refresh failed: {e}"}) from e
    return {"ok": True, **result}


@router.get("/targets", dependencies=[Depends(require_connected)])
def list_targets(ctx: AppContext = Depends(get_context)) -> dict:
    """Everything the UI can send to: contacts, group aliases and live groups."""
    store = ctx.contacts.read()
    contacts = [
        {
            "type": "contact",
            "name": c.get("name"),
            "to": c.get("jid") or c.get("msisdn") or "",
            "jid": c.get("jid"),
        }
        for c in store["contacts"]
    ]
    aliases = [
        {"type": "group-alias", "name": g.get("name"), "to": g.get("jid"), "jid": g.get("jid")}
        for g in store["groups"]
    ]
    wa_groups = sorted(
        (
            {"type": "wa-group", "name": g["subject"], "to": g["jid"], "jid": g["jid"]}
            for g in ctx.groups.by_jid.values()
        ),
        key=lambda t: str(t["name"]).lower(),
    )
    return {
        "ok": True,
        "contacts": contacts,
        "group_aliases": aliases,
        "wa_groups": wa_groups,
        "group_cache_updated_at": ctx.groups.updated_at,
    }
