"""
Identity matching tests - phone and name normalization, first-match selection
"""
import pytest

from app.services.identity_matcher import (
    FirstMatchStrategy,
    find_match,
    lead_id,
    lead_name,
    lead_phone,
    names_match,
    normalize_name,
    normalize_phone,
    phones_match,
)


class TestPhoneMatching:
    """Digits-only comparison with a shared 8-digit suffix rule"""

    def test_normalize_phone_keeps_digits_only(self):
        assert normalize_phone("+39 (333) 123-4567") == "393331234567"
        assert normalize_phone(None) == ""
        assert normalize_phone("") == ""

    def test_country_prefix_variants_match_on_suffix(self):
        assert phones_match("+39 333 1234567", "00393331234567")

    def test_short_numbers_never_match(self):
        assert not phones_match("1234", "5678")
        assert not phones_match("1234567", "1234567")

    def test_exact_match(self):
        assert phones_match("3331234567", "333-123-4567")

    def test_different_numbers(self):
        assert not phones_match("+39 333 1234567", "+39 333 7654321")

    def test_missing_phone(self):
        assert not phones_match(None, "+39 333 1234567")

    @pytest.mark.parametrize("a,b", [
        ("+39 333 1234567", "00393331234567"),
        ("1234", "5678"),
        ("3331234567", "+39 333 1234567"),
        ("+39 333 1234567", "+39 333 7654321"),
        ("", "12345678"),
    ])
    def test_symmetry(self, a, b):
        assert phones_match(a, b) == phones_match(b, a)


class TestNameMatching:
    """Accent-folded names, exact or two shared significant words"""

    def test_normalize_name_strips_accents_and_symbols(self):
        assert normalize_name("  João  D'Ávila-Souza ") == "joao davilasouza"
        assert normalize_name("ÉLODIE   Müller") == "elodie muller"
        assert normalize_name(None) == ""

    def test_two_common_words_match(self):
        assert names_match("Maria Silva Santos", "maria santos")

    def test_one_common_word_is_not_enough(self):
        assert not names_match("Maria Silva", "João Silva")

    def test_exact_after_normalization(self):
        assert names_match("José", "jose")

    def test_short_words_do_not_count(self):
        # "da" and "de" are ignored; only "ana" is shared
        assert not names_match("Ana da Luz", "Ana de Paz")

    def test_word_order_is_irrelevant(self):
        assert names_match("Rossi Marco", "Marco Antonio Rossi")

    def test_empty_names(self):
        assert not names_match("", "Maria Silva")
        assert not names_match("!!!", "???")


class TestLeadFields:
    """Carrier leads use different keys between accounts"""

    def test_phone_fallbacks(self):
        assert lead_phone({"telephone": "123"}) == "123"
        assert lead_phone({"mobile": "456"}) == "456"

    def test_name_from_parts(self):
        assert lead_name({"first_name": "Maria", "last_name": "Silva"}) == "Maria Silva"
        assert lead_name({"customer_name": "Marco Rossi"}) == "Marco Rossi"
        assert lead_name({}) is None

    def test_id_is_stringified(self):
        assert lead_id({"n_lead": 4411}) == "4411"
        assert lead_id({"id": "L-9"}) == "L-9"
        assert lead_id({}) is None


class TestFindMatch:
    """Phone pass first, then name pass; first hit wins"""

    def test_phone_beats_earlier_name_match(self):
        leads = [
            {"n_lead": "A", "phone": "111111111", "name": "Maria Silva"},
            {"n_lead": "B", "phone": "00393331234567", "name": "Someone Else"},
        ]
        assert find_match("+39 333 1234567", "Maria Silva", leads)["n_lead"] == "B"

    def test_falls_back_to_name(self):
        leads = [{"n_lead": "A", "phone": "999999999", "name": "Maria Silva Santos"}]
        assert find_match("+39 333 1234567", "Maria Santos", leads)["n_lead"] == "A"

    def test_first_candidate_wins_when_several_qualify(self):
        leads = [
            {"n_lead": "first", "name": "Maria Silva Santos"},
            {"n_lead": "second", "name": "Maria Silva"},
        ]
        assert find_match(None, "Maria Silva", leads)["n_lead"] == "first"

    def test_no_candidates(self):
        assert find_match("+39 333 1234567", "Maria Silva", []) is None

    def test_no_match(self):
        leads = [{"n_lead": "A", "phone": "0044 20 7946 0000", "name": "John Smith"}]
        assert find_match("+39 333 1234567", "Maria Silva", leads) is None

    def test_custom_strategy_is_used(self):
        class LastLead:
            def select(self, phone, name, candidates):
                return candidates[-1]

        leads = [{"n_lead": "A"}, {"n_lead": "B"}]
        assert find_match(None, None, leads, strategy=LastLead())["n_lead"] == "B"
        assert FirstMatchStrategy().select(None, None, leads) is None
