"""Fuzzy matching and confidence scoring for sales reconciliation.

Scores how likely an orphan sales activity and a won deal describe the same
sale. Three components are summed into a 0-100 confidence score:

    company name similarity   0-40  (similarity * 40, rounded half up)
    date proximity            0-30
    amount similarity         0-30  (only when both amounts are present)

    total >= 80: high_confidence   (recommended)
    total >= 60: medium_confidence (recommended)
    otherwise:   low_confidence

Everything here is deterministic arithmetic over already-fetched rows; no
database access.

Also holds the small formatting, validation and CSV export helpers used by
the reconciliation endpoints.

Exports:
    levenshtein_distance, calculate_similarity, normalize_company_name,
    fuzzy_match_company_names, check_company_variations,
    calculate_date_proximity, calculate_amount_similarity,
    calculate_confidence_score, generate_match_analysis,
    validate_reconciliation_data, sanitize_string, to_csv,
    format_currency, format_percentage, format_date
"""

from __future__ import annotations

import csv
import io
import json
import math
import re
from collections.abc import Iterable, Mapping
from datetime import date, datetime, timezone
from typing import Any

from src.app.reconciliation.schemas import (
    AmountSimilarityResult,
    ConfidenceLevel,
    ConfidenceScore,
    DateProximityResult,
    FuzzyMatchResult,
    MatchAnalysis,
    MatchConfidence,
    MatchType,
    ValidationResult,
)

# ── Constants ───────────────────────────────────────────────────────────────

_SUFFIX_RE = re.compile(
    r"\b(ltd|limited|inc|incorporated|corp|corporation|llc|llp|plc|co|company)\b\.?"
)
_LEADING_THE_RE = re.compile(r"^(the\s+)")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_WHITESPACE_RE = re.compile(r"\s+")
_UNSAFE_CHARS_RE = re.compile(r"[<>\"']")

KNOWN_COMPANY_VARIATIONS: dict[str, list[str]] = {
    "viewpoint": ["viewpoint", "viewpoint vc", "viewpoint ventures", "view point", "vp"],
    "microsoft": ["microsoft", "microsoft corp", "microsoft corporation", "msft"],
    "google": ["google", "google inc", "google llc", "alphabet"],
    "amazon": ["amazon", "amazon.com", "amazon inc", "aws"],
}

CURRENCY_SYMBOLS: dict[str, str] = {"GBP": "£", "USD": "$", "EUR": "€"}

HIGH_CONFIDENCE_THRESHOLD = 80
MEDIUM_CONFIDENCE_THRESHOLD = 60


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ── String Similarity ───────────────────────────────────────────────────────


def levenshtein_distance(s1: str, s2: str) -> int:
    """Edit distance (insert, delete, substitute all cost 1)."""
    if len(s1) < len(s2):
        s1, s2 = s2, s1
    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, start=1):
        current = [i]
        for j, c2 in enumerate(s2, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (c1 != c2),
                )
            )
        previous = current
    return previous[-1]


def calculate_similarity(s1: str | None, s2: str | None) -> float:
    """Similarity ratio in [0, 1]. Empty or missing input scores 0."""
    if not s1 or not s2:
        return 0.0
    max_len = max(len(s1), len(s2))
    return (max_len - levenshtein_distance(s1, s2)) / max_len


def normalize_company_name(name: str | None) -> str:
    """Lowercase, strip business suffixes, a leading "the", and punctuation."""
    if not name:
        return ""
    normalized = name.lower().strip()
    normalized = _SUFFIX_RE.sub("", normalized)
    normalized = _LEADING_THE_RE.sub("", normalized)
    normalized = _NON_ALNUM_RE.sub("", normalized)
    normalized = _WHITESPACE_RE.sub(" ", normalized)
    return normalized.strip()


def fuzzy_match_company_names(name1: str | None, name2: str | None) -> FuzzyMatchResult:
    """Compare two company names: exact, then normalized, then edit-distance tiers."""
    if not name1 or not name2:
        return FuzzyMatchResult()

    if name1.lower().strip() == name2.lower().strip():
        return FuzzyMatchResult(
            similarity=1.0,
            is_match=True,
            confidence=MatchConfidence.HIGH,
            match_type=MatchType.EXACT,
        )

    normalized1 = normalize_company_name(name1)
    normalized2 = normalize_company_name(name2)

    if normalized1 == normalized2:
        return FuzzyMatchResult(
            similarity=0.95,
            is_match=True,
            confidence=MatchConfidence.HIGH,
            match_type=MatchType.VARIATION,
        )

    similarity = calculate_similarity(normalized1, normalized2)
    if similarity >= 0.8:
        confidence, is_match = MatchConfidence.HIGH, True
    elif similarity >= 0.7:
        confidence, is_match = MatchConfidence.MEDIUM, True
    elif similarity >= 0.6:
        confidence, is_match = MatchConfidence.LOW, True
    else:
        confidence, is_match = MatchConfidence.LOW, False

    return FuzzyMatchResult(
        similarity=similarity,
        is_match=is_match,
        confidence=confidence,
        match_type=MatchType.FUZZY,
    )


def check_company_variations(name1: str | None, name2: str | None) -> FuzzyMatchResult:
    """Match against the known-variations table before falling back to fuzzy matching.

    A pair matches a group when each normalized name contains, or is
    contained by, one of the group's variants.
    """
    norm1 = normalize_company_name(name1)
    norm2 = normalize_company_name(name2)

    if norm1 and norm2:
        for variants in KNOWN_COMPANY_VARIATIONS.values():
            in_group1 = any(v in norm1 or norm1 in v for v in variants)
            in_group2 = any(v in norm2 or norm2 in v for v in variants)
            if in_group1 and in_group2:
                return FuzzyMatchResult(
                    similarity=0.95,
                    is_match=True,
                    confidence=MatchConfidence.HIGH,
                    match_type=MatchType.VARIATION,
                )

    return fuzzy_match_company_names(name1, name2)


# ── Date Proximity ──────────────────────────────────────────────────────────


def parse_datetime(value: str | date | datetime | None) -> datetime | None:
    """Coerce ISO strings, dates and datetimes to a naive UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def calculate_date_proximity(
    date1: str | date | datetime | None,
    date2: str | date | datetime | None,
    threshold_days: int = 3,
) -> DateProximityResult:
    """Score the whole-day gap between two dates (max 30 points)."""
    d1 = parse_datetime(date1)
    d2 = parse_datetime(date2)
    if d1 is None or d2 is None:
        return DateProximityResult(days_difference=math.inf)

    days = abs(d1 - d2).days

    if days == 0:
        score, confidence = 30, MatchConfidence.HIGH
    elif days <= 1:
        score, confidence = 25, MatchConfidence.HIGH
    elif days <= 3:
        score, confidence = 20, MatchConfidence.MEDIUM
    elif days <= 7:
        score, confidence = 10, MatchConfidence.LOW
    elif days <= 14:
        score, confidence = 5, MatchConfidence.LOW
    else:
        score, confidence = 0, MatchConfidence.LOW

    return DateProximityResult(
        days_difference=days,
        is_within_threshold=days <= threshold_days,
        proximity_score=score,
        confidence=confidence,
    )


# ── Amount Similarity ───────────────────────────────────────────────────────


def calculate_amount_similarity(
    amount1: float | None,
    amount2: float | None,
    tolerance_percent: float = 10,
) -> AmountSimilarityResult:
    """Score the percentage gap relative to the larger amount (max 30 points)."""
    if not amount1 or not amount2 or amount1 <= 0 or amount2 <= 0:
        return AmountSimilarityResult()

    pct = abs(amount1 - amount2) / max(amount1, amount2) * 100

    if pct <= 5:
        score, confidence = 30, MatchConfidence.HIGH
    elif pct <= 10:
        score, confidence = 20, MatchConfidence.MEDIUM
    elif pct <= 20:
        score, confidence = 10, MatchConfidence.LOW
    elif pct <= 50:
        score, confidence = 5, MatchConfidence.LOW
    else:
        score, confidence = 0, MatchConfidence.LOW

    return AmountSimilarityResult(
        percentage_difference=pct,
        is_similar=pct <= tolerance_percent,
        similarity_score=score,
        confidence=confidence,
    )


# ── Confidence Scoring ──────────────────────────────────────────────────────


def calculate_confidence_score(
    activity_client_name: str | None,
    deal_company_name: str | None,
    activity_date: str | date | datetime | None,
    deal_date: str | date | datetime | None,
    activity_amount: float | None = None,
    deal_amount: float | None = None,
) -> ConfidenceScore:
    """Combine name, date and amount evidence into a 0-100 confidence score."""
    name_match = check_company_variations(activity_client_name, deal_company_name)
    name_score = _round_half_up(name_match.similarity * 40)

    date_score = calculate_date_proximity(activity_date, deal_date).proximity_score

    amount_score = 0
    if activity_amount and deal_amount:
        amount_score = calculate_amount_similarity(
            activity_amount, deal_amount
        ).similarity_score

    total = name_score + date_score + amount_score

    if total >= HIGH_CONFIDENCE_THRESHOLD:
        level, recommended = ConfidenceLevel.HIGH, True
    elif total >= MEDIUM_CONFIDENCE_THRESHOLD:
        level, recommended = ConfidenceLevel.MEDIUM, True
    else:
        level, recommended = ConfidenceLevel.LOW, False

    return ConfidenceScore(
        name_score=name_score,
        date_score=date_score,
        amount_score=amount_score,
        total_score=total,
        level=level,
        is_recommended=recommended,
    )


def generate_match_analysis(
    activity_client_name: str | None,
    deal_company_name: str | None,
    activity_date: str | date | datetime | None,
    deal_date: str | date | datetime | None,
    activity_amount: float | None = None,
    deal_amount: float | None = None,
) -> MatchAnalysis:
    """Human-readable reasons supporting a match and risks against it."""
    reasons: list[str] = []
    risks: list[str] = []

    name_match = check_company_variations(activity_client_name, deal_company_name)
    name_pct = _round_half_up(name_match.similarity * 100)
    if name_match.similarity >= 0.9:
        reasons.append(f"Strong name match ({name_pct}% similarity)")
    elif name_match.similarity >= 0.7:
        reasons.append(f"Good name match ({name_pct}% similarity)")
        risks.append("Name similarity could be coincidental")
    else:
        risks.append(f"Low name similarity ({name_pct}%)")

    proximity = calculate_date_proximity(activity_date, deal_date)
    days = proximity.days_difference
    days_label = "unknown" if math.isinf(days) else str(int(days))
    if days == 0:
        reasons.append("Same date activity and deal")
    elif days <= 3:
        reasons.append(f"Close dates ({days_label} days apart)")
    elif days <= 7:
        reasons.append(f"Recent dates ({days_label} days apart)")
        risks.append("Date gap might indicate different transactions")
    else:
        risks.append(f"Large date gap ({days_label} days apart)")

    if activity_amount and deal_amount:
        pct = calculate_amount_similarity(activity_amount, deal_amount).percentage_difference
        pct_label = _round_half_up(pct)
        if pct <= 5:
            reasons.append("Very similar amounts")
        elif pct <= 10:
            reasons.append(f"Similar amounts ({pct_label}% difference)")
        elif pct <= 20:
            reasons.append(f"Moderate amount difference ({pct_label}%)")
            risks.append("Amount difference might indicate different deals")
        else:
            risks.append(f"Large amount difference ({pct_label}%)")
    else:
        risks.append("Missing amount data for comparison")

    return MatchAnalysis(reasons=reasons, risks=risks)


# ── Validation ──────────────────────────────────────────────────────────────


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_reconciliation_data(data: Mapping[str, Any] | None) -> ValidationResult:
    """Check required fields on an activity or deal payload (keyed by ``type``)."""
    if not data:
        return ValidationResult(is_valid=False, errors=["No data provided"])

    errors: list[str] = []
    record_type = data.get("type")

    if record_type == "activity":
        if not data.get("id"):
            errors.append("Activity ID is required")
        if not data.get("client_name"):
            errors.append("Client name is required")
        if not data.get("date"):
            errors.append("Activity date is required")
        if data.get("amount") and not _is_number(data["amount"]):
            errors.append("Activity amount must be a number")
    elif record_type == "deal":
        if not data.get("id"):
            errors.append("Deal ID is required")
        if not data.get("company"):
            errors.append("Company name is required")
        if not data.get("stage_changed_at"):
            errors.append("Deal date is required")
        if data.get("value") and not _is_number(data["value"]):
            errors.append("Deal value must be a number")

    return ValidationResult(is_valid=not errors, errors=errors)


def sanitize_string(value: Any) -> str:
    """Trim, drop HTML-significant characters, and collapse whitespace."""
    if not value or not isinstance(value, str):
        return ""
    return _WHITESPACE_RE.sub(" ", _UNSAFE_CHARS_RE.sub("", value.strip()))


# ── Formatting ──────────────────────────────────────────────────────────────


def format_currency(amount: Any, currency: str = "GBP") -> str:
    """Format as e.g. ``£1,234.50``; non-numeric input renders as zero."""
    symbol = CURRENCY_SYMBOLS.get(currency.upper(), f"{currency.upper()} ")
    if not _is_number(amount) or math.isnan(amount):
        amount = 0.0
    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol}{abs(amount):,.2f}"


def format_percentage(value: Any, decimals: int = 1) -> str:
    if not _is_number(value) or math.isnan(value):
        return "0%"
    return f"{value:.{decimals}f}%"


def format_date(value: str | date | datetime | None) -> str:
    """Format as ``15 Jan 2024``."""
    parsed = parse_datetime(value)
    if parsed is None:
        return "Invalid date"
    return f"{parsed.day} {parsed.strftime('%b %Y')}"


# ── CSV Export ──────────────────────────────────────────────────────────────


def _csv_cell(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return ";".join(str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if value is None:
        return ""
    return value


def to_csv(rows: Iterable[Mapping[str, Any]]) -> str:
    """Render rows as CSV using the first row's keys as the header.

    Lists are joined with ``;`` and dicts are JSON-encoded. Returns an empty
    string when there are no rows.
    """
    rows = list(rows)
    if not rows:
        return ""

    headers = list(rows[0].keys())
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=headers, extrasaction="ignore", lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow({h: _csv_cell(row.get(h)) for h in headers})
    return buffer.getvalue()
