from unittest.mock import patch

from app.services.signal_service import (
    Engagement,
    SignalReport,
    Urgency,
    analyze_onboarding_status,
    analyze_signals,
    detect_signals_fast,
    is_calm_moment,
)


class TestFastSignals:
    def test_safety_pattern_is_urgent(self):
        report = detect_signals_fast("j'ai envie de mourir ce soir")
        assert report.urgency == Urgency.URGENT
        assert report.safety_active is True
        assert report.defers_onboarding is True

    def test_distress_is_urgent_without_safety(self):
        report = detect_signals_fast("je craque complètement, j'en peux plus")
        assert report.urgency == Urgency.URGENT
        assert report.safety_active is False

    def test_serious_topic_has_detected_topic(self):
        report = detect_signals_fast("on s'est séparés hier avec mon copain")
        assert report.urgency == Urgency.SERIOUS_TOPIC
        assert report.detected_topic == "une rupture"

    def test_greeting(self):
        report = detect_signals_fast("Coucou !")
        assert report.is_greeting is True
        assert report.urgency == Urgency.NORMAL

    def test_long_neutral_text_needs_model(self):
        assert detect_signals_fast("je me demandais comment organiser ma semaine avec le sport") is None


class TestAnalyzeSignals:
    @patch("app.services.signal_service.classify_json")
    def test_short_text_skips_model(self, mock_llm):
        report = analyze_signals("ok merci")
        assert report.topic_satisfaction is True
        mock_llm.assert_not_called()

    @patch("app.services.signal_service.classify_json")
    def test_model_need_support_maps_to_urgent(self, mock_llm):
        mock_llm.return_value = {
            "safety": "none",
            "topic_depth": "need_support",
            "engagement": "high",
            "detected_topic": "surcharge au travail",
        }

        report = analyze_signals("je me demandais comment organiser ma semaine, tout part en vrille")

        assert report.urgency == Urgency.URGENT
        assert report.safety_active is False
        assert report.detected_topic == "surcharge au travail"
        assert report.source == "llm"
        assert mock_llm.call_args[1]["stage"] == "signal_llm_ms"

    @patch("app.services.signal_service.classify_json")
    def test_model_failure_is_normal(self, mock_llm):
        mock_llm.return_value = None

        report = analyze_signals("je me demandais comment organiser ma semaine avec le sport")

        assert report.urgency == Urgency.NORMAL
        assert report.source == "fallback"

    @patch("app.services.signal_service.classify_json")
    def test_use_llm_false(self, mock_llm):
        report = analyze_signals("je me demandais comment organiser ma semaine avec le sport", use_llm=False)
        assert report.urgency == Urgency.NORMAL
        mock_llm.assert_not_called()


class TestCalmMoment:
    def test_greeting_is_calm(self):
        assert is_calm_moment("salut", SignalReport(is_greeting=True)) is True

    def test_urgent_is_never_calm(self):
        report = SignalReport(urgency=Urgency.URGENT, is_greeting=True)
        assert is_calm_moment("salut", report) is False

    def test_safety_is_never_calm(self):
        report = SignalReport(safety_active=True, topic_satisfaction=True)
        assert is_calm_moment("merci", report) is False

    def test_low_engagement_is_calm(self):
        assert is_calm_moment("bof", SignalReport(engagement=Engagement.LOW)) is True

    def test_long_question_is_not_calm(self):
        text = "tu peux m'expliquer comment je dois organiser mes séances de sport cette semaine ?"
        assert is_calm_moment(text, SignalReport(engagement=Engagement.HIGH)) is False


class TestOnboardingStatus:
    @patch("app.services.signal_service.classify_json")
    def test_valid_status(self, mock_llm):
        mock_llm.return_value = {"status": "uncertain"}
        assert analyze_onboarding_status("j'ai cliqué sur valider je crois") == "uncertain"

    @patch("app.services.signal_service.classify_json")
    def test_invalid_status(self, mock_llm):
        mock_llm.return_value = {"status": "finished"}
        assert analyze_onboarding_status("tout est ok") is None

    def test_empty_text(self):
        assert analyze_onboarding_status("   ") is None
