from app.services.message_catalog import get_fallback, get_message, has_message, load_messages


class TestMessageCatalog:
    def test_catalogue_loads(self):
        messages = load_messages()
        assert {"link", "optin", "pending", "onboarding", "fallback"} <= set(messages)

    def test_site_and_support_injected(self):
        text = get_message("link.support_required")
        assert "sophia@sophia-coach.ai" in text
        assert "{" not in text

    def test_params(self):
        assert "le***@example.com" in get_message("link.email_sent", email_masked="le***@example.com")

    def test_missing_param_left_untouched(self):
        assert "{when}" in get_message("pending.bilan_rescheduled")

    def test_unknown_key_falls_back_to_default(self):
        assert get_message("link.nope") == get_message("fallback.default")
        assert has_message("link.nope") is False

    def test_fallback_by_purpose(self):
        assert get_fallback("onboarding_urgent_support").startswith("Je suis là.")
        assert get_fallback("unknown_purpose") == get_message("fallback.default")
