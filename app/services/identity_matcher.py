"""
Identity matching between storefront orders and carrier leads.

Leads carry no reference to the storefront order, so the only link is the
customer: phone first (digits, exact or shared last-8 suffix), then name
(accent-folded, exact or two shared significant words). First match wins.
"""
import re
import unicodedata
from typing import Optional, Protocol, Sequence

MIN_PHONE_DIGITS = 8
PHONE_SUFFIX_LENGTH = 8
MIN_WORD_LENGTH = 3
MIN_COMMON_WORDS = 2

_NON_DIGIT = re.compile(r"\D")
_NON_LETTER = re.compile(r"[^a-z\s]")
_SPACES = re.compile(r"\s+")


def normalize_phone(phone: Optional[str]) -> str:
    """Digits only. No country-code handling."""
    if not phone:
        return ""
    return _NON_DIGIT.sub("", str(phone))


def phones_match(a: Optional[str], b: Optional[str]) -> bool:
    na = normalize_phone(a)
    nb = normalize_phone(b)
    if len(na) < MIN_PHONE_DIGITS or len(nb) < MIN_PHONE_DIGITS:
        return False
    if na == nb:
        return True
    # Same number with and without a country prefix
    return na[-PHONE_SUFFIX_LENGTH:] == nb[-PHONE_SUFFIX_LENGTH:]


def normalize_name(name: Optional[str]) -> str:
    """Lowercase, strip diacritics, keep letters and spaces, collapse whitespace."""
    if not name:
        return ""
    folded = unicodedata.normalize("NFD", str(name).lower())
    folded = "".join(ch for ch in folded if unicodedata.category(ch) != "Mn")
    folded = _NON_LETTER.sub("", folded)
    return _SPACES.sub(" ", folded).strip()


def names_match(a: Optional[str], b: Optional[str]) -> bool:
    na = normalize_name(a)
    nb = normalize_name(b)
    if not na or not nb:
        return False
    if na == nb:
        return True
    words_a = [w for w in na.split(" ") if len(w) >= MIN_WORD_LENGTH]
    words_b = [w for w in nb.split(" ") if len(w) >= MIN_WORD_LENGTH]
    if len(words_a) < MIN_COMMON_WORDS or len(words_b) < MIN_COMMON_WORDS:
        return False
    common = set(words_a) & set(words_b)
    return len(common) >= MIN_COMMON_WORDS


# Carrier lead field access. Keys vary between API versions and accounts.

def lead_phone(lead: dict) -> Optional[str]:
    return lead.get("phone") or lead.get("telephone") or lead.get("mobile")


def lead_name(lead: dict) -> Optional[str]:
    name = lead.get("name") or lead.get("customer_name") or lead.get("name_costumer")
    if name:
        return name
    parts = [lead.get("first_name") or "", lead.get("last_name") or ""]
    joined = " ".join(p for p in parts if p).strip()
    return joined or None


def lead_id(lead: dict) -> Optional[str]:
    value = lead.get("n_lead") or lead.get("lead_number") or lead.get("id")
    return str(value) if value not in (None, "") else None


def lead_tracking(lead: dict) -> Optional[str]:
    return lead.get("tracking_number") or lead.get("tracking") or None


def lead_status(lead: dict) -> Optional[str]:
    return lead.get("status_livrison") or lead.get("status") or None


class MatchStrategy(Protocol):
    def select(self, phone: Optional[str], name: Optional[str], candidates: Sequence[dict]) -> Optional[dict]:
        ...


class FirstMatchStrategy:
    """
    Phone pass over every candidate, then name pass; the first hit wins.
    Deterministic for a given candidate order, but two orders from the same
    customer will both resolve to that customer's first lead.
    """

    def select(self, phone: Optional[str], name: Optional[str], candidates: Sequence[dict]) -> Optional[dict]:
        if phone:
            for lead in candidates:
                if phones_match(phone, lead_phone(lead)):
                    return lead
        if name:
            for lead in candidates:
                if names_match(name, lead_name(lead)):
                    return lead
        return None


_default_strategy = FirstMatchStrategy()


def find_match(
    phone: Optional[str],
    name: Optional[str],
    candidates: Sequence[dict],
    strategy: Optional[MatchStrategy] = None,
) -> Optional[dict]:
    """The lead this customer most plausibly corresponds to, or None."""
    if not candidates:
        return None
    return (strategy or _default_strategy).select(phone, name, candidates)
