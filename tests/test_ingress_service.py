from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql
from conftest import make_inbound

from app.schemas.webhook import WhatsAppStatus
from app.services.identity_service import Resolution, ResolutionKind
from app.services.ingress_service import Route, apply_status_updates, process_inbound_message
from app.services.signal_service import SignalReport, Urgency

PHONE = "+33612345678"


@pytest.fixture
def ingress():
    """Patch every handler the router can reach; each test enables the path it needs."""
    base = "app.services.ingress_service"
    with patch(f"{base}.record_inbound_event") as record, patch(f"{base}.resolve_account") as resolve, patch(
        f"{base}.linking_service"
    ) as linking, patch(f"{base}.optin_service") as optin, patch(
        f"{base}.onboarding_service"
    ) as onboarding, patch(
        f"{base}.reply_service"
    ) as reply, patch(
        f"{base}.handle_pending_reply"
    ) as pending, patch(
        f"{base}.analyze_signals"
    ) as signals:
        record.return_value = True
        optin.is_optin_reply.return_value = False
        optin.handle_bilan_prompt_reply.return_value = False
        pending.return_value = False
        onboarding.handle_onboarding_turn.return_value = False
        onboarding.maybe_surface_deferred_step.return_value = False
        reply.is_returning_user.return_value = False
        reply.load_history.return_value = []
        signals.return_value = SignalReport()
        yield SimpleNamespace(
            record=record,
            resolve=resolve,
            linking=linking,
            optin=optin,
            onboarding=onboarding,
            reply=reply,
            pending=pending,
            signals=signals,
        )


def _linked(ingress, account):
    ingress.resolve.return_value = Resolution(ResolutionKind.ACCOUNT, PHONE, account)


class TestProcessInbound:
    def test_invalid_sender_is_skipped(self, db_session, ingress, now):
        msg = make_inbound("salut", from_raw="abc")

        assert process_inbound_message(db_session, msg, now) == Route.SKIPPED
        ingress.record.assert_not_called()

    def test_duplicate_delivery_has_no_side_effects(self, db_session, ingress, now):
        ingress.record.return_value = False

        assert process_inbound_message(db_session, make_inbound("salut"), now) == Route.DUPLICATE
        ingress.resolve.assert_not_called()
        ingress.reply.reply_with_brain.assert_not_called()

    def test_unlinked_runs_linking_protocol(self, db_session, ingress, now):
        ingress.resolve.return_value = Resolution(ResolutionKind.AMBIGUOUS, PHONE)

        assert process_inbound_message(db_session, make_inbound("salut"), now) == Route.UNLINKED
        ingress.linking.handle_unlinked_message.assert_called_once()
        assert ingress.linking.handle_unlinked_message.call_args[1]["ambiguous"] is True

    def test_wrong_number_short_circuits(self, db_session, ingress, account, now):
        _linked(ingress, account)

        route = process_inbound_message(db_session, make_inbound("mauvais numéro"), now)

        assert route == Route.WRONG_NUMBER
        ingress.onboarding.ensure_first_touch.assert_not_called()
        ingress.optin.handle_stop.assert_not_called()

    def test_stop(self, db_session, ingress, account, now):
        _linked(ingress, account)

        assert process_inbound_message(db_session, make_inbound("STOP"), now) == Route.STOP
        assert account.whatsapp_last_inbound_at == now
        ingress.onboarding.ensure_first_touch.assert_called_once_with(db_session, account, now)
        ingress.optin.is_optin_reply.assert_not_called()

    def test_optin_before_pending(self, db_session, ingress, account, now):
        _linked(ingress, account)
        ingress.optin.is_optin_reply.return_value = True

        assert process_inbound_message(db_session, make_inbound("oui"), now) == Route.OPTIN
        ingress.pending.assert_not_called()

    def test_bilan_before_pending(self, db_session, ingress, account, now):
        _linked(ingress, account)
        ingress.optin.handle_bilan_prompt_reply.return_value = True

        assert process_inbound_message(db_session, make_inbound("Carrément !"), now) == Route.BILAN
        ingress.pending.assert_not_called()

    def test_pending_before_onboarding(self, db_session, ingress, account, now):
        _linked(ingress, account)
        ingress.pending.return_value = True

        assert process_inbound_message(db_session, make_inbound("oui"), now) == Route.PENDING
        ingress.onboarding.handle_onboarding_turn.assert_not_called()

    def test_onboarding(self, db_session, ingress, account, now):
        _linked(ingress, account)
        ingress.onboarding.handle_onboarding_turn.return_value = True

        assert process_inbound_message(db_session, make_inbound("c'est bon"), now) == Route.ONBOARDING
        ingress.reply.reply_with_brain.assert_not_called()

    def test_default_reply(self, db_session, ingress, account, now):
        _linked(ingress, account)

        assert process_inbound_message(db_session, make_inbound("salut"), now) == Route.DEFAULT

        kwargs = ingress.reply.reply_with_brain.call_args[1]
        assert kwargs["purpose"] == "whatsapp_reply"
        assert kwargs["adaptive"] is None
        assert kwargs["reply_to_wa_message_id"] == "wamid.1"

    def test_default_reply_uses_adaptive_flow_for_urgent_signal(self, db_session, ingress, account, now):
        _linked(ingress, account)
        ingress.signals.return_value = SignalReport(urgency=Urgency.URGENT)

        process_inbound_message(db_session, make_inbound("je craque"), now)

        ingress.reply.AdaptiveFlow.assert_called_once_with(flow="urgent", detected_topic=None)

    def test_returning_flag_reaches_reply(self, db_session, ingress, account, now):
        _linked(ingress, account)
        ingress.reply.is_returning_user.return_value = True

        process_inbound_message(db_session, make_inbound("coucou"), now)

        assert ingress.reply.reply_with_brain.call_args[1]["returning"] is True

    def test_deferred_step_replaces_default_reply(self, db_session, ingress, account, now):
        _linked(ingress, account)
        ingress.onboarding.maybe_surface_deferred_step.return_value = True

        assert process_inbound_message(db_session, make_inbound("ok merci"), now) == Route.DEFAULT
        ingress.reply.reply_with_brain.assert_not_called()

    def test_token_from_verified_phone_goes_to_linking(self, db_session, ingress, now):
        with patch("app.services.ingress_service.find_verified_owner") as mock_owner:
            mock_owner.return_value = SimpleNamespace(id="holder")

            route = process_inbound_message(db_session, make_inbound("LINK:abcdefghijkl"), now)

        assert route == Route.LINK_TOKEN
        ingress.linking.handle_link_token.assert_called_once()
        assert ingress.linking.handle_link_token.call_args[0][3] == "abcdefghijkl"
        ingress.resolve.assert_not_called()
        ingress.reply.reply_with_brain.assert_not_called()

    def test_token_from_unknown_phone_stays_in_unlinked_protocol(self, db_session, ingress, now):
        ingress.resolve.return_value = Resolution(ResolutionKind.UNLINKED, PHONE)
        with patch("app.services.ingress_service.find_verified_owner") as mock_owner:
            mock_owner.return_value = None

            route = process_inbound_message(db_session, make_inbound("LINK:abcdefghijkl"), now)

        assert route == Route.UNLINKED
        ingress.linking.handle_link_token.assert_not_called()
        ingress.linking.handle_unlinked_message.assert_called_once()


class TestStatusUpdates:
    def test_only_failures_are_applied(self):
        db = MagicMock()
        db.execute.return_value.first.return_value = (uuid4(),)
        statuses = [
            WhatsAppStatus(id="wamid.out.1", status="delivered"),
            WhatsAppStatus(id="wamid.out.2", status="failed", errors=[{"code": 131026}]),
        ]

        assert apply_status_updates(db, statuses) == 1
        db.execute.assert_called_once()
        stmt = db.execute.call_args[0][0]
        assert stmt.table.name == "whatsapp_outbound_delivery_failures"
        assert stmt.compile(dialect=postgresql.dialect()).params["provider_message_id"] == "wamid.out.2"

    def test_repeated_failure_report_is_not_counted_twice(self):
        db = MagicMock()
        db.execute.return_value.first.return_value = None

        assert apply_status_updates(db, [WhatsAppStatus(id="wamid.out.2", status="failed")]) == 0
