import uuid

from sqlalchemy import Column, ForeignKey, Index, Text, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class PendingAction(Base):
    __tablename__ = "whatsapp_pending_actions"
    __table_args__ = (
        Index(
            "uq_pending_actions_one_pending_per_kind",
            "account_id",
            "kind",
            unique=True,
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False)
    kind = Column(Text, nullable=False)  # scheduled_checkin, memory_echo, bilan_reschedule
    status = Column(Text, nullable=False, default="pending")
    payload = Column(JSONB, nullable=False, default=dict)
    scheduled_checkin_id = Column(UUID(as_uuid=True), ForeignKey("scheduled_checkins.id"), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    processed_at = Column(TIMESTAMP(timezone=True))


class ScheduledCheckin(Base):
    __tablename__ = "scheduled_checkins"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False)
    kind = Column(Text, nullable=False, default="checkin")  # checkin, bilan
    draft_message = Column(Text)
    scheduled_for = Column(TIMESTAMP(timezone=True), nullable=False)
    status = Column(Text, nullable=False, default="pending")  # pending, sent, cancelled
    processed_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
