from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Request

from stormcrm.api.deps import (
    OwnerOrAdminGate,
    RateLimit,
    RoleGate,
    enforce_ip_block,
    get_abuse_signals,
    get_current_user,
    get_optional_user,
    release_rate_limit,
)
from stormcrm.api.schemas import (
    ApiKeyCreateRequest,
    ApiKeyList,
    ApiKeyOut,
    ApiKeyResponse,
    ApiKeyUpdateRequest,
    AuthResponse,
    CampaignCreateRequest,
    CampaignOut,
    HailEventList,
    HailEventOut,
    HailEventSummary,
    LeadCreateRequest,
    LeadList,
    LeadNoteCreateRequest,
    LeadNoteList,
    LeadNoteOut,
    LeadOut,
    LeadUpdateRequest,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    SkiptraceOut,
    SkiptraceRequest,
    SystemFeatures,
    SystemSettingsResponse,
    UserOut,
)
from stormcrm.config import RouteClass
from stormcrm.logging import get_logger
from stormcrm.service.abuse import AbuseSignals
from stormcrm.service.auth import AuthContext
from stormcrm.service.authz import Role
from stormcrm.service.errors import (
    ConflictError,
    InsufficientPermissionsError,
    NotFoundError,
    ValidationError,
)
from stormcrm.service.runtime import get_runtime
from stormcrm.storage.common import utcnow_iso
from stormcrm.storage.statements import (
    DeleteById,
    FetchById,
    InsertInto,
    ListAll,
    ListByOwner,
    Partition,
    UpdateById,
)

logger = get_logger(__name__)

# Everything under /api passes the IP blocklist and the general limiter first.
router = APIRouter(
    prefix="/api",
    dependencies=[Depends(enforce_ip_block), Depends(RateLimit(RouteClass.GENERAL))],
)

_LEAD_MANAGERS = (Role.ADMIN, Role.MANAGER)
_LEAD_WRITERS = (Role.ADMIN, Role.MANAGER, Role.SALES_REP)


async def _record_activity(
    db: Any, ctx: AuthContext, action: str, entity_type: str, entity_id: Optional[str]
) -> None:
    await db.query(
        InsertInto(
            Partition.ACTIVITY_LOG,
            {
                "user_id": ctx.id,
                "action": action,
                "entity_type": entity_type,
                "entity_id": entity_id,
            },
        )
    )


# -- auth -------------------------------------------------------------------------


@router.post(
    "/auth/register",
    response_model=AuthResponse,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(RateLimit(RouteClass.AUTH))],
)
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime()
    user, pair = await runtime.auth.register(
        body.email,
        body.password,
        body.first_name,
        body.last_name,
        phone=body.phone,
        role=body.role,
    )
    release_rate_limit(request, RouteClass.AUTH)
    return AuthResponse(
        message="User registered successfully",
        user=UserOut.from_row(user),
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
    )


@router.post(
    "/auth/login",
    response_model=AuthResponse,
    tags=["auth"],
    dependencies=[Depends(RateLimit(RouteClass.AUTH))],
)
async def login(
    body: LoginRequest,
    request: Request,
    signals: AbuseSignals = Depends(get_abuse_signals),
):
    runtime = get_runtime()
    user, pair = await runtime.auth.login(body.email, body.password, signals=signals)
    release_rate_limit(request, RouteClass.AUTH)
    return AuthResponse(
        message="Login successful",
        user=UserOut.from_row(user),
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
    )


@router.post(
    "/auth/refresh",
    response_model=RefreshResponse,
    tags=["auth"],
    dependencies=[Depends(RateLimit(RouteClass.AUTH))],
)
async def refresh_tokens(body: RefreshRequest, request: Request):
    access_token = await get_runtime().auth.refresh(body.refresh_token)
    release_rate_limit(request, RouteClass.AUTH)
    return RefreshResponse(access_token=access_token)


@router.get("/auth/me", response_model=UserOut, tags=["auth"])
async def me(ctx: AuthContext = Depends(get_current_user)):
    user = await get_runtime().auth.profile(ctx.id)
    return UserOut.from_row(user)


@router.post("/auth/logout", response_model=MessageResponse, tags=["auth"])
async def logout(ctx: AuthContext = Depends(get_current_user)):
    # Tokens are stateless; the client discards them.
    logger.info("user_logged_out", user_id=ctx.id)
    return MessageResponse(message="Logout successful")


# -- hail events ------------------------------------------------------------------


@router.get("/hail", response_model=HailEventList, tags=["hail"])
async def list_hail_events(ctx: Optional[AuthContext] = Depends(get_optional_user)):
    result = await get_runtime().db.query(ListAll(Partition.HAIL_EVENTS))
    model = HailEventOut if ctx is not None else HailEventSummary
    events = [model.model_validate(row).model_dump(by_alias=True) for row in result.rows]
    return HailEventList(events=events, count=len(events))


# -- leads -----------------------------------------------------------------------


@router.get("/leads", response_model=LeadList, tags=["leads"])
async def list_leads(ctx: AuthContext = Depends(get_current_user)):
    db = get_runtime().db
    if ctx.role in {role.value for role in _LEAD_MANAGERS}:
        result = await db.query(ListAll(Partition.LEADS))
    else:
        result = await db.query(ListByOwner(Partition.LEADS, "assigned_to", ctx.id))
    leads = [LeadOut.model_validate(row) for row in result.rows]
    return LeadList(leads=leads, count=len(leads))


@router.post("/leads", response_model=LeadOut, status_code=201, tags=["leads"])
async def create_lead(
    body: LeadCreateRequest, ctx: AuthContext = Depends(RoleGate(*_LEAD_WRITERS))
):
    values = body.model_dump()
    assignee = values.get("assigned_to") or ctx.id
    if assignee != ctx.id and ctx.role not in {role.value for role in _LEAD_MANAGERS}:
        raise InsufficientPermissionsError("Only managers can assign leads to other users")
    values["assigned_to"] = assignee

    async def work(tx):
        created = await tx.query(InsertInto(Partition.LEADS, values))
        lead = created.first
        await _record_activity(tx, ctx, "lead_created", "lead", str(lead["id"]))
        return lead

    lead = await get_runtime().db.transaction(work)
    logger.info("lead_created", lead_id=str(lead["id"]), user_id=ctx.id)
    return LeadOut.model_validate(lead)


async def _load_lead(lead_id: str) -> dict[str, Any]:
    result = await get_runtime().db.query(FetchById(Partition.LEADS, lead_id))
    if result.first is None:
        raise NotFoundError("Lead not found")
    return result.first


@router.get("/leads/{id}", response_model=LeadOut, tags=["leads"])
async def get_lead(
    id: str, ctx: AuthContext = Depends(OwnerOrAdminGate(Partition.LEADS, "assigned_to"))
):
    return LeadOut.model_validate(await _load_lead(id))


@router.patch("/leads/{id}", response_model=LeadOut, tags=["leads"])
async def update_lead(
    id: str,
    body: LeadUpdateRequest,
    ctx: AuthContext = Depends(OwnerOrAdminGate(Partition.LEADS, "assigned_to")),
):
    changes = body.model_dump(exclude_unset=True)
    if "assigned_to" in changes and ctx.role not in {role.value for role in _LEAD_MANAGERS}:
        raise InsufficientPermissionsError("Only managers can reassign leads")
    result = await get_runtime().db.query(UpdateById(Partition.LEADS, id, changes))
    if result.first is None:
        raise NotFoundError("Lead not found")
    return LeadOut.model_validate(result.first)


@router.delete("/leads/{id}", response_model=MessageResponse, tags=["leads"])
async def delete_lead(
    id: str, ctx: AuthContext = Depends(OwnerOrAdminGate(Partition.LEADS, "assigned_to"))
):
    db = get_runtime().db
    result = await db.query(DeleteById(Partition.LEADS, id))
    if result.row_count == 0:
        raise NotFoundError("Lead not found")
    await _record_activity(db, ctx, "lead_deleted", "lead", id)
    return MessageResponse(message="Lead deleted successfully")


@router.get("/leads/{id}/notes", response_model=LeadNoteList, tags=["leads"])
async def list_lead_notes(
    id: str, ctx: AuthContext = Depends(OwnerOrAdminGate(Partition.LEADS, "assigned_to"))
):
    await _load_lead(id)
    result = await get_runtime().db.query(ListByOwner(Partition.LEAD_NOTES, "lead_id", id))
    notes = [LeadNoteOut.model_validate(row) for row in result.rows]
    return LeadNoteList(notes=notes, count=len(notes))


@router.post("/leads/{id}/notes", response_model=LeadNoteOut, status_code=201, tags=["leads"])
async def add_lead_note(
    id: str,
    body: LeadNoteCreateRequest,
    ctx: AuthContext = Depends(OwnerOrAdminGate(Partition.LEADS, "assigned_to")),
):
    await _load_lead(id)
    db = get_runtime().db
    result = await db.query(
        InsertInto(
            Partition.LEAD_NOTES,
            {"lead_id": id, "text": body.text, "author": ctx.email, "user_id": ctx.id},
        )
    )
    note = result.first
    await _record_activity(db, ctx, "lead_note_added", "lead", id)
    logger.info("lead_note_added", lead_id=id, user_id=ctx.id)
    return LeadNoteOut.model_validate(note)


# -- settings --------------------------------------------------------------------


@router.get("/settings/api-keys", response_model=ApiKeyList, tags=["settings"])
async def list_api_keys(ctx: AuthContext = Depends(get_current_user)):
    result = await get_runtime().db.query(
        ListByOwner(Partition.API_KEYS, "user_id", ctx.id, include_unowned=True)
    )
    return ApiKeyList(api_keys=[ApiKeyOut.from_row(row) for row in result.rows])


@router.post(
    "/settings/api-keys", response_model=ApiKeyResponse, status_code=201, tags=["settings"]
)
async def create_api_key(
    body: ApiKeyCreateRequest, ctx: AuthContext = Depends(get_current_user)
):
    runtime = get_runtime()
    cipher = runtime.credentials
    result = await runtime.db.query(
        InsertInto(
            Partition.API_KEYS,
            {
                "user_id": ctx.id,
                "service": body.service,
                "key_name": body.key_name,
                "api_key_encrypted": cipher.encrypt(body.api_key),
                "api_secret_encrypted": cipher.encrypt(body.api_secret),
                "api_key_preview": cipher.preview(body.api_key),
                "metadata": body.metadata,
                "is_active": True,
                "last_used_at": None,
            },
        )
    )
    logger.info("api_key_created", service=body.service, user_id=ctx.id)
    return ApiKeyResponse(message="API key added successfully", api_key=ApiKeyOut.from_row(result.first))


@router.patch("/settings/api-keys/{id}", response_model=ApiKeyResponse, tags=["settings"])
async def update_api_key(
    id: str,
    body: ApiKeyUpdateRequest,
    ctx: AuthContext = Depends(OwnerOrAdminGate(Partition.API_KEYS, "user_id")),
):
    runtime = get_runtime()
    cipher = runtime.credentials
    updates = body.model_dump(exclude_unset=True)
    changes: dict[str, Any] = {}
    if "key_name" in updates:
        changes["key_name"] = updates["key_name"]
    if updates.get("api_key"):
        changes["api_key_encrypted"] = cipher.encrypt(updates["api_key"])
        changes["api_key_preview"] = cipher.preview(updates["api_key"])
    if "api_secret" in updates:
        changes["api_secret_encrypted"] = cipher.encrypt(updates["api_secret"])
    if "is_active" in updates:
        changes["is_active"] = updates["is_active"]
    if "metadata" in updates:
        changes["metadata"] = updates["metadata"]
    result = await runtime.db.query(UpdateById(Partition.API_KEYS, id, changes))
    if result.first is None:
        raise NotFoundError("API key not found")
    logger.info("api_key_updated", api_key_id=id, user_id=ctx.id)
    return ApiKeyResponse(message="API key updated successfully", api_key=ApiKeyOut.from_row(result.first))


@router.delete("/settings/api-keys/{id}", response_model=MessageResponse, tags=["settings"])
async def delete_api_key(
    id: str, ctx: AuthContext = Depends(OwnerOrAdminGate(Partition.API_KEYS, "user_id"))
):
    result = await get_runtime().db.query(DeleteById(Partition.API_KEYS, id))
    if result.row_count == 0:
        raise NotFoundError("API key not found")
    logger.info("api_key_deleted", api_key_id=id, user_id=ctx.id)
    return MessageResponse(message="API key deleted successfully")


_FEATURE_SERVICES = {
    "ai_enabled": "gemini",
    "email_enabled": "sendgrid",
    "sms_enabled": "twilio",
    "skiptrace_enabled": "tloxp",
    "ghl_enabled": "ghl",
    "noaa_enabled": "noaa",
}


@router.get("/settings/system", response_model=SystemSettingsResponse, tags=["settings"])
async def system_settings(ctx: AuthContext = Depends(RoleGate(Role.ADMIN))):
    result = await get_runtime().db.query(ListAll(Partition.API_KEYS, order_by_created_desc=False))
    system_keys = [row for row in result.rows if row.get("user_id") is None]
    active = {row["service"] for row in system_keys if row.get("is_active")}
    features = SystemFeatures(
        **{flag: service in active for flag, service in _FEATURE_SERVICES.items()}
    )
    return SystemSettingsResponse(
        system_keys=[ApiKeyOut.from_row(row) for row in sorted(system_keys, key=lambda r: r["service"])],
        features=features,
    )


# -- campaigns -------------------------------------------------------------------


@router.post("/campaigns", response_model=CampaignOut, status_code=201, tags=["campaigns"])
async def create_campaign(
    body: CampaignCreateRequest,
    ctx: AuthContext = Depends(RoleGate(Role.ADMIN, Role.MANAGER)),
):
    lead_ids = list(dict.fromkeys(body.leads))

    async def work(tx):
        # Checked before any insert; the emulated store does not roll back.
        missing = [
            lead_id
            for lead_id in lead_ids
            if (await tx.query(FetchById(Partition.LEADS, lead_id))).first is None
        ]
        if missing:
            raise ValidationError(
                "Campaign references unknown leads",
                details=[{"field": "leads", "message": f"Lead not found: {lead_id}"} for lead_id in missing],
            )
        created = await tx.query(
            InsertInto(
                Partition.CAMPAIGNS,
                {
                    "name": body.name,
                    "type": body.type,
                    "template": body.template,
                    "subject": body.subject,
                    "status": "draft",
                    "lead_ids": lead_ids,
                    "scheduled_for": body.scheduled_for,
                    "launched_at": None,
                    "created_by": ctx.id,
                },
            )
        )
        campaign = created.first
        for lead_id in lead_ids:
            await tx.query(
                InsertInto(
                    Partition.CAMPAIGN_LEADS,
                    {"campaign_id": campaign["id"], "lead_id": lead_id, "status": "pending"},
                )
            )
        return campaign

    campaign = await get_runtime().db.transaction(work)
    logger.info("campaign_created", campaign_id=str(campaign["id"]), leads=len(lead_ids))
    return CampaignOut.model_validate(campaign)


@router.post(
    "/campaigns/{id}/launch",
    response_model=CampaignOut,
    tags=["campaigns"],
    dependencies=[Depends(RateLimit(RouteClass.CAMPAIGN))],
)
async def launch_campaign(
    id: str, ctx: AuthContext = Depends(RoleGate(Role.ADMIN, Role.MANAGER))
):
    db = get_runtime().db
    found = await db.query(FetchById(Partition.CAMPAIGNS, id))
    campaign = found.first
    if campaign is None:
        raise NotFoundError("Campaign not found")
    if campaign.get("status") == "launched":
        raise ConflictError("Campaign has already been launched")
    # Delivery happens outside this service; launching records the state change.
    updated = await db.query(
        UpdateById(Partition.CAMPAIGNS, id, {"status": "launched", "launched_at": utcnow_iso()})
    )
    await _record_activity(db, ctx, "campaign_launched", "campaign", id)
    logger.info("campaign_launched", campaign_id=id, user_id=ctx.id)
    return CampaignOut.model_validate(updated.first)


# -- skip tracing ---------------------------------------------------------------


@router.post(
    "/skiptrace",
    response_model=SkiptraceOut,
    status_code=202,
    tags=["skiptrace"],
    dependencies=[Depends(RateLimit(RouteClass.COSTLY))],
)
async def request_skiptrace(
    body: SkiptraceRequest, ctx: AuthContext = Depends(RoleGate(*_LEAD_WRITERS))
):
    db = get_runtime().db
    lead = await _load_lead(body.lead_id)
    if ctx.role == Role.SALES_REP.value and str(lead.get("assigned_to")) != ctx.id:
        raise InsufficientPermissionsError("You can only access your own resources")
    created = await db.query(
        InsertInto(
            Partition.SKIPTRACE_RESULTS,
            {"lead_id": body.lead_id, "requested_by": ctx.id, "status": "queued"},
        )
    )
    await _record_activity(db, ctx, "skiptrace_requested", "lead", body.lead_id)
    logger.info("skiptrace_queued", lead_id=body.lead_id, user_id=ctx.id)
    return SkiptraceOut.model_validate(created.first)


__all__ = ["router"]
