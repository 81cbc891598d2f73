import uuid

from sqlalchemy import Boolean, Column, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class Account(Base):
    __tablename__ = "accounts"
    # Deferrable so a single UPDATE can move the phone between two rows.
    __table_args__ = (
        UniqueConstraint("verified_phone", name="uq_accounts_verified_phone", deferrable=True, initially="IMMEDIATE"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(Text)
    full_name = Column(Text)
    phone_number = Column(Text)  # as entered at signup, may be unverified
    verified_phone = Column(Text)  # E.164, set only once possession is proven
    phone_verified_at = Column(TIMESTAMP(timezone=True))

    whatsapp_state = Column(Text)
    whatsapp_state_updated_at = Column(TIMESTAMP(timezone=True))
    deferred_onboarding_steps = Column(JSONB, nullable=False, default=list)

    whatsapp_opted_in = Column(Boolean, nullable=False, default=False)
    whatsapp_bilan_opted_in = Column(Boolean, nullable=False, default=False)
    whatsapp_optout_at = Column(TIMESTAMP(timezone=True))
    whatsapp_optout_reason = Column(Text)
    whatsapp_optout_confirmed_at = Column(TIMESTAMP(timezone=True))
    whatsapp_last_inbound_at = Column(TIMESTAMP(timezone=True))
    whatsapp_first_touched_at = Column(TIMESTAMP(timezone=True))

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
