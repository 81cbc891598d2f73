from unittest.mock import MagicMock, patch

from sqlalchemy.exc import OperationalError

from app.models.memory import Memory
from app.services.onboarding_machine import (
    DeferredStep,
    DeferStepsEffect,
    EscalateSupportEffect,
    OnboardingState,
    Purpose,
    ReplyEffect,
    ResolveDeferredStepEffect,
    StoreMemoryEffect,
    Transition,
)
from app.services.onboarding_service import (
    add_deferred_steps,
    apply_transition,
    ensure_first_touch,
    get_deferred_steps,
    handle_onboarding_turn,
    maybe_surface_deferred_step,
    remove_deferred_step,
)
from app.services.signal_service import SignalReport, Urgency

TO = "+33612345678"


class TestDeferredSteps:
    def test_unknown_and_duplicate_values_are_dropped(self, account):
        account.deferred_onboarding_steps = ["motivation", "legacy", "motivation", "personal_fact"]
        assert get_deferred_steps(account) == [DeferredStep.MOTIVATION, DeferredStep.PERSONAL_FACT]

    def test_add_keeps_order_without_duplicates(self, account):
        account.deferred_onboarding_steps = ["personal_fact"]
        add_deferred_steps(account, [DeferredStep.MOTIVATION, DeferredStep.PERSONAL_FACT])
        assert account.deferred_onboarding_steps == ["personal_fact", "motivation"]

    def test_remove(self, account):
        account.deferred_onboarding_steps = ["motivation", "personal_fact"]
        remove_deferred_step(account, DeferredStep.MOTIVATION)
        assert account.deferred_onboarding_steps == ["personal_fact"]


class TestFirstTouch:
    @patch("app.services.onboarding_service.reply_service")
    def test_arms_finalization_without_plan(self, mock_reply, db_session, account, now):
        mock_reply.has_active_plan.return_value = False

        assert ensure_first_touch(db_session, account, now) is True
        assert account.whatsapp_first_touched_at == now
        assert account.whatsapp_state == OnboardingState.AWAITING_PLAN_FINALIZATION.value

    @patch("app.services.onboarding_service.reply_service")
    def test_active_plan_only_stamps(self, mock_reply, db_session, account, now):
        mock_reply.has_active_plan.return_value = True

        assert ensure_first_touch(db_session, account, now) is False
        assert account.whatsapp_first_touched_at == now
        assert account.whatsapp_state is None

    @patch("app.services.onboarding_service.reply_service")
    def test_already_touched_is_noop(self, mock_reply, db_session, account, now):
        account.whatsapp_first_touched_at = now
        assert ensure_first_touch(db_session, account, now) is False
        mock_reply.has_active_plan.assert_not_called()

    @patch("app.services.onboarding_service.reply_service")
    def test_db_failure_does_not_raise(self, mock_reply, db_session, account, now):
        mock_reply.has_active_plan.return_value = False
        db_session.flush.side_effect = OperationalError("UPDATE accounts", {}, Exception("down"))

        assert ensure_first_touch(db_session, account, now) is False


class TestApplyTransition:
    @patch("app.services.onboarding_service.alert_support_escalation")
    @patch("app.services.onboarding_service.reply_service")
    def test_bookkeeping_then_replies(self, mock_reply, mock_alert, db_session, account, now):
        account.deferred_onboarding_steps = ["personal_fact"]
        result = Transition(
            OnboardingState.AWAITING_PLAN_FINALIZATION_SUPPORT,
            (
                StoreMemoryEffect("whatsapp_personal_fact", "je suis prof", {"source": "onboarding"}),
                DeferStepsEffect((DeferredStep.MOTIVATION,)),
                ResolveDeferredStepEffect(DeferredStep.PERSONAL_FACT),
                EscalateSupportEffect("plan_not_visible_after_retry"),
                ReplyEffect(purpose=Purpose.FINALIZATION_ESCALATION, message_key="onboarding.support_escalation"),
            ),
        )

        apply_transition(db_session, account, TO, "c'est bon", result, reply_to_wa_message_id="wamid.1", now=now)

        assert account.whatsapp_state == OnboardingState.AWAITING_PLAN_FINALIZATION_SUPPORT.value
        assert account.deferred_onboarding_steps == ["motivation"]
        memory = db_session.add.call_args[0][0]
        assert isinstance(memory, Memory)
        assert memory.content == "je suis prof"
        mock_alert.assert_called_once_with(account.id, "plan_not_visible_after_retry", excerpt="c'est bon")

        kwargs = mock_reply.send_and_log.call_args[1]
        assert kwargs["purpose"] == Purpose.FINALIZATION_ESCALATION
        assert kwargs["metadata"] == {"state": OnboardingState.AWAITING_PLAN_FINALIZATION_SUPPORT.value}
        mock_reply.reply_with_brain.assert_not_called()

    @patch("app.services.onboarding_service.reply_service")
    def test_adaptive_reply_carries_deferred_steps(self, mock_reply, db_session, account, now):
        result = Transition(
            None,
            (
                DeferStepsEffect((DeferredStep.MOTIVATION, DeferredStep.PERSONAL_FACT)),
                ReplyEffect(purpose=Purpose.URGENT_SUPPORT, directive="Présence.", adaptive_flow="urgent"),
            ),
        )

        apply_transition(db_session, account, TO, "je craque", result, now=now)

        assert account.whatsapp_state is None
        mock_reply.AdaptiveFlow.assert_called_once_with(
            flow="urgent",
            detected_topic=None,
            deferred_steps=("motivation", "personal_fact"),
        )
        kwargs = mock_reply.reply_with_brain.call_args[1]
        assert kwargs["purpose"] == Purpose.URGENT_SUPPORT
        assert kwargs["adaptive"] is mock_reply.AdaptiveFlow.return_value


class TestHandleOnboardingTurn:
    @patch("app.services.onboarding_service.reply_service")
    def test_no_state_returns_false(self, mock_reply, db_session, account, now):
        mock_reply.has_personal_fact.return_value = False
        mock_reply.last_outbound_purpose.return_value = None

        assert handle_onboarding_turn(db_session, account, TO, "salut", now=now) is False
        mock_reply.load_history.assert_not_called()

    @patch("app.services.onboarding_service.analyze_signals")
    @patch("app.services.onboarding_service.reply_service")
    def test_motivation_score_moves_to_personal_fact(self, mock_reply, mock_signals, db_session, account, now):
        account.whatsapp_state = OnboardingState.AWAITING_PLAN_MOTIVATION.value
        mock_reply.has_personal_fact.return_value = False
        mock_reply.last_outbound_purpose.return_value = Purpose.MOTIVATION_PROMPT
        mock_reply.load_history.return_value = []
        mock_signals.return_value = SignalReport()

        assert handle_onboarding_turn(db_session, account, TO, "7", now=now) is True

        assert account.whatsapp_state == OnboardingState.AWAITING_PERSONAL_FACT.value
        assert mock_reply.reply_with_brain.call_args[1]["purpose"] == Purpose.MOTIVATION_ASK_FACT

    @patch("app.services.onboarding_service.classify_plan_finalization")
    @patch("app.services.onboarding_service.analyze_signals")
    @patch("app.services.onboarding_service.reply_service")
    def test_urgent_signal_skips_finalization_classifier(
        self, mock_reply, mock_signals, mock_finalization, db_session, account, now
    ):
        account.whatsapp_state = OnboardingState.AWAITING_PLAN_FINALIZATION.value
        mock_reply.has_active_plan.return_value = False
        mock_reply.has_personal_fact.return_value = False
        mock_reply.last_outbound_purpose.return_value = None
        mock_reply.load_history.return_value = []
        mock_signals.return_value = SignalReport(urgency=Urgency.URGENT)

        handle_onboarding_turn(db_session, account, TO, "j'en peux plus", now=now)

        mock_finalization.assert_not_called()
        assert account.whatsapp_state is None
        assert account.deferred_onboarding_steps == ["motivation", "personal_fact"]


class TestSurfaceDeferredStep:
    @patch("app.services.onboarding_service.reply_service")
    def test_calm_moment_asks_first_step(self, mock_reply, db_session, account, now):
        account.deferred_onboarding_steps = ["personal_fact", "motivation"]

        surfaced = maybe_surface_deferred_step(
            db_session, account, TO, "salut", signals=SignalReport(is_greeting=True), now=now
        )

        assert surfaced is True
        assert account.whatsapp_state == OnboardingState.AWAITING_DEFERRED_PERSONAL_FACT.value
        assert mock_reply.reply_with_brain.call_args[1]["purpose"] == Purpose.DEFERRED_PROMPT

    @patch("app.services.onboarding_service.reply_service")
    def test_not_calm(self, mock_reply, db_session, account, now):
        account.deferred_onboarding_steps = ["motivation"]
        signals = SignalReport(urgency=Urgency.SERIOUS_TOPIC)

        assert maybe_surface_deferred_step(db_session, account, TO, "salut", signals=signals, now=now) is False
        assert account.whatsapp_state is None

    def test_nothing_deferred(self, account, now):
        db = MagicMock()
        assert maybe_surface_deferred_step(db, account, TO, "salut", signals=SignalReport(), now=now) is False
