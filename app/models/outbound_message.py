import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Index, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class OutboundMessage(Base):
    """Append-only audit row for every message the core sends."""

    __tablename__ = "whatsapp_outbound_messages"
    __table_args__ = (Index("ix_outbound_account_purpose_created", "account_id", "purpose", "created_at"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=True)
    to_e164 = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    provider_message_id = Column(Text)
    tracking_id = Column(Text, nullable=False)
    purpose = Column(Text, nullable=False)
    is_proactive = Column(Boolean, nullable=False, default=False)
    reply_to_wa_message_id = Column(Text)
    status = Column(Text, nullable=False, default="sent")  # sent, skipped, failed
    message_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())


class OutboundDeliveryFailure(Base):
    """Delivery failure reported by the platform for a sent message; written once per provider id."""

    __tablename__ = "whatsapp_outbound_delivery_failures"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider_message_id = Column(Text, nullable=False, unique=True)
    status = Column(Text, nullable=False, default="failed")
    errors = Column(JSONB, nullable=False, default=list)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
