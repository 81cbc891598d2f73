import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class InboundEvent(Base):
    __tablename__ = "inbound_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    wa_message_id = Column(Text, nullable=False, unique=True)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=True)
    from_e164 = Column(Text, nullable=False)
    message_type = Column(Text, nullable=False)  # text, button, interactive
    text = Column(Text, nullable=False, default="")
    interactive_id = Column(Text)
    interactive_title = Column(Text)
    profile_name = Column(Text)
    raw = Column(JSONB, nullable=False, default=dict)
    received_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())


class UnlinkedInboundMessage(Base):
    __tablename__ = "unlinked_inbound_messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    wa_message_id = Column(Text, nullable=False, unique=True)
    phone_e164 = Column(Text, nullable=False)
    link_request_id = Column(UUID(as_uuid=True), ForeignKey("link_requests.id"), nullable=True)
    text = Column(Text, nullable=False, default="")
    raw = Column(JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
