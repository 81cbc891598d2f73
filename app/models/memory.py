import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class Memory(Base):
    __tablename__ = "memories"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False)
    type = Column(Text, nullable=False)  # whatsapp_personal_fact, whatsapp_motivation_score, ...
    content = Column(Text, nullable=False)
    source_type = Column(Text, nullable=False, default="whatsapp")
    memory_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())


class ProfileFact(Base):
    """Inferred style/schedule facts. Read-only for this service."""

    __tablename__ = "user_profile_facts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False)
    key = Column(Text, nullable=False)
    value = Column(JSONB)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
