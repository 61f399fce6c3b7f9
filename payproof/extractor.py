"""Structured field extraction from OCR text.

Each rule is a pure function ``(text) -> Optional[value]`` registered in
``FIELD_RULES``. Rules do not depend on each other and may run in any order;
a rule that finds nothing returns ``None`` and its presence flag stays false.
"""

import re
import logging
from typing import Callable, Dict, List, Optional, Tuple

import textdistance
from dateutil import parser as date_parser

from .models import ExtractedFields

logger = logging.getLogger(__name__)

FUZZY_THRESHOLD = 0.85

AMOUNT_PATTERNS = [
    re.compile(r"₹\s*([\d,]+(?:\.\d{1,2})?)"),
    re.compile(r"\bINR\s*([\d,]+(?:\.\d{1,2})?)", re.IGNORECASE),
    re.compile(r"\bRs\.?\s*([\d,]+(?:\.\d{1,2})?)", re.IGNORECASE),
    re.compile(r"\bAMOUNT\b[:\s]*₹?\s*([\d,]+(?:\.\d{1,2})?)", re.IGNORECASE),
]

MONTHS = r"(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Sept|Oct|Nov|Dec)[a-z]*"
DATE_PATTERNS = [
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    re.compile(r"\b\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}\b"),
    re.compile(rf"\b\d{{1,2}}(?:st|nd|rd|th)?\s+{MONTHS},?\s+\d{{2,4}}\b", re.IGNORECASE),
    re.compile(rf"\b{MONTHS}\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}\b", re.IGNORECASE),
]

TRANSACTION_PATTERNS = [
    re.compile(r"\b(?:UTR|UPI\s*(?:Ref(?:erence)?|Transaction)?\s*(?:No|ID)?|TXN|Transaction)\b[\s.#:]*(?:ID|No|Number)?[\s.#:]*([A-Z0-9]{10,22})\b", re.IGNORECASE),
    re.compile(r"\b(?:REF|REFERENCE)\b[\s.#:]*(?:ID|No|Number)?[\s.#:]*([A-Z0-9]{10,22})\b", re.IGNORECASE),
    re.compile(r"\b([0-9]{12,16})\b"),
]

POSITIVE_STATUS_KEYWORDS = [
    "payment successful", "successful", "success", "completed", "paid", "credited",
]
NEGATIVE_STATUS_KEYWORDS = ["failed", "declined"]

PAYMENT_KEYWORDS = [
    "UPI", "IMPS", "NEFT", "RTGS", "BHIM", "GOOGLE PAY", "GPAY",
    "PHONEPE", "PAYTM", "PAYMENT",
]

BANK_NAMES = [
    ("STATE BANK", "SBI"), ("SBI", "SBI"), ("HDFC", "HDFC Bank"),
    ("ICICI", "ICICI Bank"), ("AXIS", "Axis Bank"), ("KOTAK", "Kotak Mahindra Bank"),
    ("YES BANK", "Yes Bank"), ("IDFC", "IDFC First Bank"),
    ("BANK OF BARODA", "Bank of Baroda"), ("PUNJAB NATIONAL", "Punjab National Bank"),
    ("PNB", "Punjab National Bank"), ("CANARA", "Canara Bank"),
    ("UNION BANK", "Union Bank of India"), ("BANK OF INDIA", "Bank of India"),
    ("INDIAN BANK", "Indian Bank"),
]

# Maintenance platforms come first: they often embed a UPI app name.
PLATFORMS = [
    ("mygate", "MyGate"), ("nobroker", "NoBroker"), ("adda", "Adda"),
    ("google pay", "Google Pay"), ("gpay", "Google Pay"), ("phonepe", "PhonePe"),
    ("paytm", "Paytm"), ("bhim", "BHIM"), ("amazon pay", "Amazon Pay"),
]

PAYMENT_TYPES = [
    ("UPI", "UPI"), ("NEFT", "NEFT"), ("IMPS", "IMPS"), ("RTGS", "RTGS"),
    ("BANK TRANSFER", "BANK_TRANSFER"),
]


def _tokens(text: str) -> List[str]:
    return re.findall(r"[A-Za-z]+", text.upper())


def _contains_term(text_upper: str, term: str) -> bool:
    return re.search(rf"(?<![A-Z]){re.escape(term)}(?![A-Z])", text_upper) is not None


def fuzzy_contains(text: str, term: str, threshold: float = FUZZY_THRESHOLD) -> bool:
    """Match ``term`` exactly or against an OCR-misread window of tokens.

    Only terms of five letters or more are matched fuzzily; shorter ones
    (SBI, UPI) collide with ordinary words.
    """
    text_upper = text.upper()
    term_upper = term.upper()
    if _contains_term(text_upper, term_upper):
        return True
    if len(term_upper.replace(" ", "")) < 5:
        return False

    width = len(term_upper.split())
    tokens = _tokens(text)
    for i in range(len(tokens) - width + 1):
        window = " ".join(tokens[i:i + width])
        if textdistance.levenshtein.normalized_similarity(window, term_upper) >= threshold:
            return True
    return False


def extract_amount(text: str) -> Optional[float]:
    for pattern in AMOUNT_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        try:
            amount = float(match.group(1).replace(",", ""))
        except ValueError:
            continue
        if amount > 0:
            return amount
    return None


def extract_date(text: str) -> Optional[str]:
    """Return the first date found, normalised to ISO when it parses."""
    for pattern in DATE_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        raw = match.group(0)
        dayfirst = not re.match(r"\d{4}-", raw)
        try:
            return date_parser.parse(raw, dayfirst=dayfirst, fuzzy=True).date().isoformat()
        except (ValueError, OverflowError):
            logger.debug(f"Could not normalise date {raw!r}")
            return raw
    return None


def extract_transaction_ref(text: str) -> Optional[str]:
    for pattern in TRANSACTION_PATTERNS:
        for match in pattern.finditer(text):
            candidate = match.group(1).upper()
            # A reference carries digits; this skips words like "SUCCESSFULLY".
            if any(ch.isdigit() for ch in candidate):
                return candidate
    return None


def extract_platform(text: str) -> Optional[str]:
    for term, label in PLATFORMS:
        if fuzzy_contains(text, term):
            return label
    if extract_bank_name(text):
        return "Bank"
    return None


def extract_bank_name(text: str) -> Optional[str]:
    for term, label in BANK_NAMES:
        if fuzzy_contains(text, term):
            return label
    return None


def extract_payment_type(text: str) -> Optional[str]:
    text_upper = text.upper()
    for term, label in PAYMENT_TYPES:
        if _contains_term(text_upper, term):
            return label
    return None


def extract_status_keyword(text: str) -> Optional[str]:
    """Return the status keyword present; negative outcomes take precedence."""
    text_lower = text.lower()
    for keyword in NEGATIVE_STATUS_KEYWORDS + POSITIVE_STATUS_KEYWORDS:
        if re.search(rf"\b{re.escape(keyword)}\b", text_lower):
            return keyword
    return None


def extract_payment_keyword(text: str) -> Optional[str]:
    text_upper = text.upper()
    for keyword in PAYMENT_KEYWORDS:
        if _contains_term(text_upper, keyword):
            return keyword
    return None


# (field name, presence flag or None, rule)
FIELD_RULES: List[Tuple[str, Optional[str], Callable[[str], object]]] = [
    ("amount", "has_amount", extract_amount),
    ("date", "has_date", extract_date),
    ("transaction_ref", "has_transaction_ref", extract_transaction_ref),
    ("platform", None, extract_platform),
    ("bank_name", "has_bank_name", extract_bank_name),
    ("payment_type", None, extract_payment_type),
    ("status_keyword", "has_status_keyword", extract_status_keyword),
    (None, "has_payment_keyword", extract_payment_keyword),
]


def is_negative_status(keyword: Optional[str]) -> bool:
    return keyword in NEGATIVE_STATUS_KEYWORDS


class FieldExtractor:
    """Applies every registered rule to OCR text."""

    def __init__(self, rules=None):
        self.rules = list(rules if rules is not None else FIELD_RULES)

    def extract(self, text: str) -> ExtractedFields:
        if not text or not text.strip():
            return ExtractedFields()

        values: Dict[str, object] = {}
        for field_name, flag, rule in self.rules:
            value = rule(text)
            if field_name:
                values[field_name] = value
            if flag:
                values[flag] = value is not None

        fields = ExtractedFields(**values)
        logger.info(f"Extracted {fields.found_count}/{len(fields.PRESENCE_FLAGS)} payment signals")
        return fields


def extraction_text(source: str, winner_text: str, primary_text: str, fallback_text: str) -> str:
    """Choose extractor input: the winner's text, or both engines' text combined."""
    if source == "winner":
        return winner_text
    if source == "combined":
        parts = [t for t in (primary_text, fallback_text) if t and t.strip()]
        return "\n".join(parts)
    raise ValueError(f"Unsupported extraction source: {source}")
