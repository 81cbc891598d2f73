from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from app.schemas.webhook import InboundMessage


@pytest.fixture
def db_session():
    """Mock database session (MagicMock so ``with db.begin_nested():`` works)."""
    return MagicMock()


@pytest.fixture
def now():
    return datetime(2026, 3, 10, 18, 0, tzinfo=timezone.utc)


@pytest.fixture
def account():
    return SimpleNamespace(
        id=uuid4(),
        email="lea@example.com",
        full_name="Léa Martin",
        phone_number="+33612345678",
        verified_phone="+33612345678",
        phone_verified_at=None,
        whatsapp_state=None,
        whatsapp_state_updated_at=None,
        deferred_onboarding_steps=[],
        whatsapp_opted_in=True,
        whatsapp_bilan_opted_in=False,
        whatsapp_optout_at=None,
        whatsapp_optout_reason=None,
        whatsapp_optout_confirmed_at=None,
        whatsapp_last_inbound_at=None,
        whatsapp_first_touched_at=None,
    )


def make_inbound(text="Salut", *, wa_message_id="wamid.1", from_raw="33612345678", interactive_id=None):
    return InboundMessage(
        wa_message_id=wa_message_id,
        from_raw=from_raw,
        type="interactive" if interactive_id else "text",
        text=text,
        interactive_id=interactive_id,
    )
