import pytest

from app.services.phrase_service import (
    extract_after_done_phrase,
    extract_email,
    extract_link_token,
    is_bare_greeting,
    is_decline_reply,
    is_done_phrase,
    is_echo_yes,
    is_later_reply,
    is_not_done_phrase,
    is_optin_yes,
    is_stop_keyword,
    is_uncertain_phrase,
    is_wrong_number_claim,
    is_yes_reply,
    mask_email,
    match_focus_choice,
    normalize_for_matching,
    normalize_text,
    strip_first_motivation_score,
)


class TestNormalization:
    def test_strips_accents_and_apostrophes(self):
        assert normalize_text("  C’est   Réglé ") == "c'est regle"

    def test_trims_punctuation_and_emoji(self):
        assert normalize_for_matching("Carrément ! 🙂") == "carrement"

    def test_empty(self):
        assert normalize_text(None) == ""
        assert normalize_for_matching("") == ""


class TestStopAndWrongNumber:
    @pytest.mark.parametrize("text", ["STOP", "stop", "Stop !", "Stop les messages", "désinscrire"])
    def test_stop_keywords(self, text):
        assert is_stop_keyword(text) is True

    def test_stop_interactive_id(self):
        assert is_stop_keyword("", "OPTOUT") is True

    def test_stop_not_in_sentence(self):
        assert is_stop_keyword("je veux pas que ça stop") is False

    @pytest.mark.parametrize("text", ["mauvais numéro", "C'est pas moi", "ce n'est pas mon numéro", "wrong number"])
    def test_wrong_number_claims(self, text):
        assert is_wrong_number_claim(text) is True

    def test_wrong_number_interactive(self):
        assert is_wrong_number_claim(None, "OPTIN_WRONG_NUMBER") is True

    def test_ordinary_text_is_not_wrong_number(self):
        assert is_wrong_number_claim("j'ai noté le numéro du médecin") is False


class TestAffirmatives:
    def test_optin_yes_is_strict(self):
        assert is_optin_yes("Oui !") is True
        assert is_optin_yes("oui mais plus tard") is False
        assert is_optin_yes("", "OPTIN_YES") is True

    @pytest.mark.parametrize("text", ["oui", "Ok", "Vas-y", "avec plaisir", "oui bien sûr"])
    def test_yes_replies(self, text):
        assert is_yes_reply(text) is True

    def test_yes_then_later_is_not_yes(self):
        assert is_yes_reply("oui mais plus tard") is False
        assert is_later_reply("oui mais plus tard") is True

    @pytest.mark.parametrize("text", ["non", "Non merci", "pas ce soir", "laisse tomber"])
    def test_declines(self, text):
        assert is_decline_reply(text) is True

    def test_echo_yes(self):
        assert is_echo_yes("Oui ça m'intéresse !") is True
        assert is_echo_yes("Plus tard !") is False


class TestPlanFinalizationPhrases:
    def test_done(self):
        assert is_done_phrase("C'est bon !") is True
        assert is_done_phrase("c bon") is True

    def test_not_done(self):
        assert is_not_done_phrase("pas encore") is True
        assert is_not_done_phrase("toujours pas, désolé") is True

    def test_uncertain(self):
        assert is_uncertain_phrase("je crois que oui") is True

    def test_fact_after_done_phrase(self):
        assert extract_after_done_phrase("c'est bon, je suis infirmière") == "je suis infirmière"

    def test_fact_survives_spacing_and_leading_symbols(self):
        assert extract_after_done_phrase("c'est  bon, je suis infirmière") == "je suis infirmière"
        assert extract_after_done_phrase("👍 c'est bon, je suis infirmière") == "je suis infirmière"
        assert extract_after_done_phrase("C’est   fait !  Je cours le matin") == "Je cours le matin"

    def test_nothing_after_done_phrase(self):
        assert extract_after_done_phrase("c'est bon !") == ""
        assert extract_after_done_phrase("je suis infirmière") == ""


class TestMotivationAndFocus:
    def test_strip_score(self):
        assert strip_first_motivation_score("7/10, mais je suis crevé") == (7, "mais je suis crevé")

    def test_no_score(self):
        assert strip_first_motivation_score("assez motivé") == (None, "assez motivé")

    def test_focus_choice(self):
        assert match_focus_choice("le plan") == "plan"
        assert match_focus_choice("autre chose d'abord") == "other"
        assert match_focus_choice("je sais pas") is None

    def test_bare_greeting(self):
        assert is_bare_greeting("Coucou !") is True
        assert is_bare_greeting("coucou, j'ai une question") is False


class TestLinkingExtraction:
    def test_extract_email(self):
        assert extract_email("c'est lea.martin@example.com merci") == "lea.martin@example.com"
        assert extract_email("pas d'email ici") is None

    def test_extract_link_token(self):
        assert extract_link_token("LINK:AbCdEf123456_-xy") == "AbCdEf123456_-xy"
        assert extract_link_token("link: AbCdEf123456") == "AbCdEf123456"

    def test_short_token_ignored(self):
        assert extract_link_token("LINK:abc") is None

    def test_mask_email(self):
        assert mask_email("lea@example.com") == "le***@example.com"
