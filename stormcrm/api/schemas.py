from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

RoleName = Literal["admin", "manager", "sales_rep", "viewer"]
LeadStage = Literal[
    "new", "contacted", "qualified", "proposal", "negotiation", "closed_won", "closed_lost"
]
CampaignType = Literal["email", "sms", "direct_mail", "ringless_voicemail"]
ApiKeyService = Literal[
    "gemini", "openai", "anthropic", "noaa", "sendgrid", "twilio", "tloxp", "ghl"
]


def _wire_value(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, list):
        return [_wire_value(item) for item in value]
    return value


class CamelModel(BaseModel):
    """Wire models use camelCase names; Python code uses snake_case.

    Postgres rows carry UUID, datetime and Decimal values where the emulated
    store keeps strings and floats; both are normalised before validation.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _normalize_db_values(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {key: _wire_value(value) for key, value in data.items()}
        return data


def _normalize_unicode(value: str) -> str:
    # Zero-width characters could be used to register look-alike addresses
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[\d\s\-\(\)]+$")
_ZIP_PATTERN = re.compile(r"^\d{5}(-\d{4})?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Please provide a valid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Please provide a valid email address")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Please provide a valid email address")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Please provide a valid email address")
    return normalized


def _validate_optional_email(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    return _validate_email(value)


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    if not _PHONE_PATTERN.match(value):
        raise ValueError("Please provide a valid phone number")
    return value


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters long")
    if len(value) > 128:
        raise ValueError("Password must be at most 128 characters long")
    return value


# -- errors -----------------------------------------------------------------


class ErrorBody(CamelModel):
    """Error response body: a stable ``error`` label plus optional detail."""

    error: str
    message: Optional[str] = None
    details: Optional[List[Any]] = None
    retry_after: Optional[str] = None


# -- auth -------------------------------------------------------------------


class RegisterRequest(CamelModel):
    email: str
    password: str
    first_name: str = Field(..., min_length=2, max_length=100)
    last_name: str = Field(..., min_length=2, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)
    role: RoleName = "sales_rep"

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class UserOut(CamelModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    role: str
    is_active: bool = True
    created_at: Optional[str] = None
    last_login_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "UserOut":
        return cls.model_validate({**row, "id": str(row["id"])})


class AuthResponse(CamelModel):
    message: str
    user: UserOut
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class RefreshResponse(CamelModel):
    access_token: str
    token_type: str = "bearer"


class MessageResponse(CamelModel):
    message: str


# -- hail events --------------------------------------------------------------


class HailEventSummary(CamelModel):
    id: str
    event_date: Optional[str] = None
    county: Optional[str] = None
    location: Optional[str] = None
    hail_size: Optional[float] = None
    severity: Optional[str] = None


class HailEventOut(HailEventSummary):
    lat: Optional[float] = None
    lng: Optional[float] = None
    wind_speed: Optional[float] = None
    damages_reported: Optional[bool] = None
    injuries: Optional[int] = None
    source: Optional[str] = None
    created_at: Optional[str] = None


class HailEventList(CamelModel):
    events: List[dict[str, Any]]
    count: int


# -- leads --------------------------------------------------------------------


class LeadCreateRequest(CamelModel):
    name: str = Field(..., min_length=2, max_length=255)
    email: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=32)
    property_address: str = Field(..., min_length=5, max_length=500)
    property_city: Optional[str] = Field(default=None, max_length=100)
    property_state: Optional[str] = Field(default=None, max_length=2)
    property_zip: Optional[str] = None
    hail_event_id: Optional[str] = None
    stage: LeadStage = "new"
    score: int = Field(default=0, ge=0, le=100)
    tags: List[str] = Field(default_factory=list, max_length=50)
    notes: Optional[str] = Field(default=None, max_length=10000)
    assigned_to: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_lead_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_optional_email(value)

    @field_validator("phone")
    @classmethod
    def _validate_lead_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    @field_validator("property_zip")
    @classmethod
    def _validate_zip(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        if not _ZIP_PATTERN.match(value):
            raise ValueError("Please provide a valid ZIP code")
        return value


class LeadUpdateRequest(CamelModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=255)
    email: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=32)
    stage: Optional[LeadStage] = None
    score: Optional[int] = Field(default=None, ge=0, le=100)
    tags: Optional[List[str]] = Field(default=None, max_length=50)
    notes: Optional[str] = Field(default=None, max_length=10000)
    assigned_to: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_lead_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_optional_email(value)

    @field_validator("phone")
    @classmethod
    def _validate_lead_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    @model_validator(mode="after")
    def _require_change(self):
        if not self.model_fields_set:
            raise ValueError("at least one field must be provided")
        return self


class LeadOut(CamelModel):
    id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    property_address: Optional[str] = None
    property_city: Optional[str] = None
    property_state: Optional[str] = None
    property_zip: Optional[str] = None
    hail_event_id: Optional[str] = None
    stage: Optional[str] = None
    score: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    notes: Optional[str] = None
    assigned_to: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class LeadList(CamelModel):
    leads: List[LeadOut]
    count: int


class LeadNoteCreateRequest(CamelModel):
    text: str = Field(..., min_length=1, max_length=5000)

    @field_validator("text")
    @classmethod
    def _text_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Note text is required")
        return value


class LeadNoteOut(CamelModel):
    id: str
    lead_id: str
    text: str
    author: str
    user_id: Optional[str] = None
    created_at: Optional[str] = None


class LeadNoteList(CamelModel):
    notes: List[LeadNoteOut]
    count: int


# -- settings / api keys ---------------------------------------------------------


class ApiKeyCreateRequest(CamelModel):
    service: ApiKeyService
    key_name: str = Field(..., min_length=1, max_length=100)
    api_key: str = Field(..., min_length=1, max_length=4096)
    api_secret: Optional[str] = Field(default=None, max_length=4096)
    metadata: Optional[dict] = None


class ApiKeyUpdateRequest(CamelModel):
    key_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    api_key: Optional[str] = Field(default=None, min_length=1, max_length=4096)
    api_secret: Optional[str] = Field(default=None, max_length=4096)
    is_active: Optional[bool] = None
    metadata: Optional[dict] = None

    @model_validator(mode="after")
    def _require_change(self):
        if not self.model_fields_set:
            raise ValueError("at least one field must be provided")
        return self


class ApiKeyOut(CamelModel):
    id: str
    user_id: Optional[str] = None
    service: str
    key_name: str
    is_active: bool = True
    preview: Optional[str] = None
    last_used_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ApiKeyOut":
        return cls(
            id=str(row["id"]),
            user_id=row.get("user_id"),
            service=row["service"],
            key_name=row["key_name"],
            is_active=row.get("is_active", True),
            preview=row.get("api_key_preview"),
            last_used_at=row.get("last_used_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


class ApiKeyList(CamelModel):
    api_keys: List[ApiKeyOut]


class ApiKeyResponse(CamelModel):
    message: str
    api_key: ApiKeyOut


class SystemFeatures(CamelModel):
    ai_enabled: bool = False
    email_enabled: bool = False
    sms_enabled: bool = False
    skiptrace_enabled: bool = False
    ghl_enabled: bool = False
    noaa_enabled: bool = False


class SystemSettingsResponse(CamelModel):
    system_keys: List[ApiKeyOut]
    features: SystemFeatures


# -- campaigns ----------------------------------------------------------------


class CampaignCreateRequest(CamelModel):
    name: str = Field(..., min_length=3, max_length=255)
    type: CampaignType
    template: str = Field(..., min_length=10, max_length=20000)
    subject: Optional[str] = Field(default=None, max_length=500)
    leads: List[str] = Field(..., min_length=1, max_length=10000)
    scheduled_for: Optional[str] = None

    @model_validator(mode="after")
    def _require_email_subject(self):
        if self.type == "email" and not self.subject:
            raise ValueError("Email campaigns require a subject")
        return self


class CampaignOut(CamelModel):
    id: str
    name: str
    type: str
    template: str
    subject: Optional[str] = None
    status: str
    lead_ids: List[str] = Field(default_factory=list)
    scheduled_for: Optional[str] = None
    launched_at: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# -- skip tracing ---------------------------------------------------------------


class SkiptraceRequest(CamelModel):
    lead_id: str = Field(..., min_length=1, max_length=128)


class SkiptraceOut(CamelModel):
    id: str
    lead_id: str
    status: str
    requested_by: str
    created_at: Optional[str] = None


# -- health -----------------------------------------------------------------------


class HealthResponse(CamelModel):
    status: Literal["ok", "degraded"]
    backend: str
    database: Literal["connected", "unavailable"]
    build_sha: str
    timestamp: str
