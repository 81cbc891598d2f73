"""Operator endpoints for the linking protocol."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger
from app.models import UnlinkedInboundMessage
from app.services.alert_service import send_alert
from app.services.linking_service import get_link_request, reset_link_request
from app.services.phone_service import normalize_from

logger = get_logger("admin")

router = APIRouter(prefix="/admin", tags=["admin"])

RECENT_MESSAGES_LIMIT = 20


# === SCHEMAS ===


class LinkRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    phone_e164: str
    status: str
    attempts: int
    last_prompted_at: Optional[datetime] = None
    last_email_attempted: Optional[str] = None
    linked_account_id: Optional[UUID] = None
    updated_at: Optional[datetime] = None


class UnlinkedMessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    wa_message_id: str
    text: str
    created_at: Optional[datetime] = None


class LinkRequestDetail(LinkRequestResponse):
    recent_messages: list[UnlinkedMessageResponse] = []


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _phone_or_400(phone: str) -> str:
    normalized = normalize_from(phone)
    if not normalized:
        raise HTTPException(status_code=400, detail="Invalid phone number")
    return normalized


# === LINK REQUEST ENDPOINTS ===


@router.get("/link-requests/{phone}", response_model=LinkRequestDetail)
async def get_link_request_detail(
    phone: str,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    phone_e164 = _phone_or_400(phone)
    link_request = get_link_request(db, phone_e164)
    if not link_request:
        raise HTTPException(status_code=404, detail="Link request not found")
    messages = (
        db.query(UnlinkedInboundMessage)
        .filter(UnlinkedInboundMessage.phone_e164 == phone_e164)
        .order_by(UnlinkedInboundMessage.created_at.desc())
        .limit(RECENT_MESSAGES_LIMIT)
        .all()
    )
    detail = LinkRequestDetail.model_validate(link_request)
    detail.recent_messages = [UnlinkedMessageResponse.model_validate(m) for m in messages]
    return detail


@router.post("/link-requests/{phone}/reset", response_model=LinkRequestResponse)
async def reset_link_request_endpoint(
    phone: str,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Reopen a support_required / blocked request so the user can retry the e-mail flow."""
    _require_admin_token(x_admin_token)
    phone_e164 = _phone_or_400(phone)
    result = reset_link_request(db, phone_e164)
    if not result.ok:
        status_code = 404 if result.error_code == "not_found" else 409
        raise HTTPException(status_code=status_code, detail=result.error)
    db.commit()
    logger.info("Link request reset by operator", extra={"context": {"phone": phone_e164}})
    return LinkRequestResponse.model_validate(result.value)


# === ALERTS ===


class AlertTestResponse(BaseModel):
    success: bool
    message: str


@router.post("/alerts/test", response_model=AlertTestResponse)
def alerts_test(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")):
    _require_admin_token(x_admin_token)
    if send_alert("INFO", "Alerts test", {"source": "admin.alerts_test"}):
        return AlertTestResponse(success=True, message="Alert sent")
    return AlertTestResponse(success=False, message="Alert not sent (check ALERT_BOT_TOKEN/ALERT_CHAT_ID)")
