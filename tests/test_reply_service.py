from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

from app.models.outbound_message import OutboundMessage
from app.services.reply_service import (
    AdaptiveFlow,
    build_adaptive_context,
    build_onboarding_context,
    build_style_block,
    has_recent_purpose,
    is_returning_user,
    load_history,
    reply_with_brain,
    send_and_log,
)
from app.services.whatsapp_service import SendOutcome

TO = "+33612345678"


class TestOnboardingContext:
    def test_contains_guardrails_and_state(self):
        context = build_onboarding_context(state="awaiting_plan_finalization", plan_active=False)

        assert "STATE: awaiting_plan_finalization" in context
        assert "aucun plan actif" in context
        assert "Site: https://sophia-coach.ai" in context
        assert "Support: sophia@sophia-coach.ai" in context
        assert "pas de markdown" in context

    def test_unknown_plan_status(self):
        assert "PLAN: statut incertain." in build_onboarding_context(state=None, plan_active=None)

    def test_memories_and_returning_user(self):
        context = build_onboarding_context(
            state=None, plan_active=True, memories=["aime courir le matin"], returning=True
        )

        assert "- aime courir le matin" in context
        assert "USER REVENANT" in context

    def test_style_block_dedupes_labels(self):
        block = build_style_block({"tone": "direct", "conversation.tone": "doux", "use_emojis": False})

        assert "- Ton: direct" in block
        assert "doux" not in block
        assert "- Emojis: non" in block

    def test_empty_style_block(self):
        assert build_style_block({}) == ""


class TestAdaptiveContext:
    def test_urgent_skips_onboarding(self):
        context = build_adaptive_context(AdaptiveFlow(flow="urgent"))
        assert "URGENCE" in context
        assert "SKIP la question motivation" in context

    def test_serious_topic_names_topic(self):
        assert "un deuil" in build_adaptive_context(AdaptiveFlow(flow="serious_topic", detected_topic="un deuil"))

    def test_deferred_lists_steps(self):
        context = build_adaptive_context(AdaptiveFlow(flow="deferred", deferred_steps=("motivation",)))
        assert "ÉTAPES DIFFÉRÉES: motivation" in context

    def test_unknown_flow(self):
        assert build_adaptive_context(AdaptiveFlow(flow="normal")) == ""


class TestReturningUser:
    def test_thresholds(self, now):
        assert is_returning_user(None, now) is False
        assert is_returning_user(now - timedelta(days=1), now) is False
        assert is_returning_user(now - timedelta(days=4), now) is True


class TestHistory:
    def test_merges_turns_oldest_first(self, db_session):
        t0 = datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)
        inbound = [SimpleNamespace(received_at=t0 + timedelta(minutes=2), text="ça va", interactive_title=None)]
        outbound = [SimpleNamespace(created_at=t0, content="Hello 🙂"), SimpleNamespace(created_at=t0, content="")]
        db_session.query.return_value.filter.return_value.order_by.return_value.limit.return_value.all.side_effect = [
            inbound,
            outbound,
        ]

        history = load_history(db_session, "acc-1")

        assert history == [
            {"role": "assistant", "content": "Hello 🙂"},
            {"role": "user", "content": "ça va"},
        ]


class TestRecentPurpose:
    def test_failed_deliveries_do_not_count(self, db_session, now):
        db_session.query.return_value.filter.return_value.first.return_value = None

        assert has_recent_purpose(db_session, "acc-1", ["optin"], timedelta(hours=30), now) is False

        clauses = [str(clause) for clause in db_session.query.return_value.filter.call_args[0]]
        assert any("whatsapp_outbound_delivery_failures" in clause and "NOT" in clause for clause in clauses)
        db_session.execute.assert_not_called()

    def test_recent_send(self, db_session, now):
        db_session.query.return_value.filter.return_value.first.return_value = ("row-id",)

        assert has_recent_purpose(db_session, "acc-1", ["daily_bilan"], timedelta(hours=6), now) is True


class TestSendAndLog:
    @patch("app.services.reply_service.whatsapp_service.send_text")
    def test_audit_row_for_every_send(self, mock_send, db_session):
        mock_send.return_value = SendOutcome(ok=False, skipped=True, reason="recipient_not_allowed_list")

        outcome = send_and_log(db_session, "acc-1", TO, "Coucou", purpose="link_prompt", reply_to_wa_message_id="w1")

        assert outcome.skipped
        row = db_session.add.call_args[0][0]
        assert isinstance(row, OutboundMessage)
        assert row.status == "skipped"
        assert row.purpose == "link_prompt"
        assert row.reply_to_wa_message_id == "w1"
        assert row.message_metadata == {"reason": "recipient_not_allowed_list"}
        assert row.tracking_id


class TestReplyWithBrain:
    @patch("app.services.reply_service.send_and_log")
    @patch("app.services.reply_service.generate_text")
    @patch("app.services.reply_service.load_history")
    @patch("app.services.reply_service.build_reply_context")
    def test_generated_reply(self, mock_context, mock_history, mock_generate, mock_send, db_session, account):
        mock_context.return_value = "CTX"
        mock_history.return_value = []
        mock_generate.return_value = "Salut Léa 🙂"

        reply_with_brain(db_session, account, TO, "salut", purpose="whatsapp_reply")

        assert mock_send.call_args[0][3] == "Salut Léa 🙂"
        assert mock_send.call_args[1]["metadata"]["fallback"] is False

    @patch("app.services.reply_service.send_and_log")
    @patch("app.services.reply_service.generate_text")
    @patch("app.services.reply_service.load_history")
    @patch("app.services.reply_service.build_reply_context")
    def test_generation_failure_uses_catalogue_fallback(
        self, mock_context, mock_history, mock_generate, mock_send, db_session, account
    ):
        mock_context.return_value = "CTX"
        mock_history.return_value = []
        mock_generate.return_value = None

        reply_with_brain(db_session, account, TO, "c'est bon", purpose="awaiting_plan_finalization_still_missing_soft")

        content = mock_send.call_args[0][3]
        assert "https://sophia-coach.ai" in content
        assert mock_send.call_args[1]["metadata"]["fallback"] is True
