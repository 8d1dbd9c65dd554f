"""Tests for reconciliation matching, validation and formatting helpers.

Covers:
- Edit distance and similarity ratios
- Company name normalization, fuzzy tiers and known variations
- Date proximity and amount similarity scoring bands
- Composite confidence score levels and human-readable analysis
- Payload validation, sanitization, currency/percentage/date formatting
- CSV export
"""

from __future__ import annotations

import math
from datetime import date, datetime

import pytest

from src.app.reconciliation.matching import (
    calculate_amount_similarity,
    calculate_confidence_score,
    calculate_date_proximity,
    calculate_similarity,
    check_company_variations,
    format_currency,
    format_date,
    format_percentage,
    fuzzy_match_company_names,
    generate_match_analysis,
    levenshtein_distance,
    normalize_company_name,
    sanitize_string,
    to_csv,
    validate_reconciliation_data,
)
from src.app.reconciliation.schemas import ConfidenceLevel, MatchConfidence, MatchType


# ── String Similarity ─────────────────────────────────────────────────────────


class TestSimilarity:
    def test_levenshtein_distance(self) -> None:
        assert levenshtein_distance("kitten", "sitting") == 3
        assert levenshtein_distance("", "abc") == 3
        assert levenshtein_distance("same", "same") == 0

    def test_similarity_ratio(self) -> None:
        assert calculate_similarity("abcd", "abcd") == 1.0
        assert calculate_similarity("abcd", "abce") == 0.75

    def test_empty_input_scores_zero(self) -> None:
        assert calculate_similarity("", "acme") == 0.0
        assert calculate_similarity(None, "acme") == 0.0


class TestCompanyNames:
    def test_normalize_strips_suffix_the_and_punctuation(self) -> None:
        assert normalize_company_name("The Acme Corp.") == "acme"
        assert normalize_company_name("Globex Corporation") == "globex"
        assert normalize_company_name("  Smith & Sons  LLC ") == "smith sons"
        assert normalize_company_name(None) == ""

    def test_exact_match_ignores_case_and_whitespace(self) -> None:
        result = fuzzy_match_company_names("Acme", "  ACME ")
        assert result.similarity == 1.0
        assert result.match_type == MatchType.EXACT
        assert result.confidence == MatchConfidence.HIGH

    def test_normalized_match_is_a_variation(self) -> None:
        result = fuzzy_match_company_names("Acme Ltd", "acme limited")
        assert result.similarity == 0.95
        assert result.is_match is True
        assert result.match_type == MatchType.VARIATION

    def test_unrelated_names_do_not_match(self) -> None:
        result = fuzzy_match_company_names("Acme", "Zenith")
        assert result.is_match is False
        assert result.match_type == MatchType.FUZZY

    def test_missing_name_is_no_match(self) -> None:
        result = fuzzy_match_company_names("Acme", None)
        assert result.is_match is False
        assert result.similarity == 0.0

    def test_known_variation_group(self) -> None:
        result = check_company_variations("Microsoft Corp", "MSFT")
        assert result.similarity == 0.95
        assert result.match_type == MatchType.VARIATION


# ── Date Proximity ────────────────────────────────────────────────────────────


class TestDateProximity:
    @pytest.mark.parametrize(
        ("other", "score", "within"),
        [
            ("2024-03-01", 30, True),
            ("2024-03-02", 25, True),
            ("2024-03-04", 20, True),
            ("2024-03-06", 10, False),
            ("2024-03-12", 5, False),
            ("2024-04-01", 0, False),
        ],
    )
    def test_score_bands(self, other: str, score: int, within: bool) -> None:
        result = calculate_date_proximity("2024-03-01", other)
        assert result.proximity_score == score
        assert result.is_within_threshold is within

    def test_mixed_date_types_and_timezones(self) -> None:
        result = calculate_date_proximity(date(2024, 3, 1), "2024-03-01T10:00:00Z")
        assert result.days_difference == 0
        assert result.proximity_score == 30

    def test_unparseable_date_is_infinitely_far(self) -> None:
        result = calculate_date_proximity("not a date", datetime(2024, 3, 1))
        assert math.isinf(result.days_difference)
        assert result.proximity_score == 0


# ── Amount Similarity ─────────────────────────────────────────────────────────


class TestAmountSimilarity:
    def test_close_amounts_score_full(self) -> None:
        result = calculate_amount_similarity(100, 104)
        assert result.similarity_score == 30
        assert result.confidence == MatchConfidence.HIGH

    def test_ten_percent_is_similar(self) -> None:
        result = calculate_amount_similarity(100, 90)
        assert result.percentage_difference == pytest.approx(10.0)
        assert result.similarity_score == 20
        assert result.is_similar is True

    def test_large_gap(self) -> None:
        assert calculate_amount_similarity(100, 40).similarity_score == 0

    def test_missing_or_non_positive_amounts(self) -> None:
        assert calculate_amount_similarity(100, 0).similarity_score == 0
        assert calculate_amount_similarity(None, 100).percentage_difference == 100.0
        assert calculate_amount_similarity(-5, 100).is_similar is False


# ── Confidence Score ──────────────────────────────────────────────────────────


class TestConfidenceScore:
    def test_high_confidence(self) -> None:
        score = calculate_confidence_score(
            "Acme Ltd", "Acme Limited", "2024-03-01", "2024-03-01", 1000, 1000
        )
        assert (score.name_score, score.date_score, score.amount_score) == (38, 30, 30)
        assert score.total_score == 98
        assert score.level == ConfidenceLevel.HIGH
        assert score.is_recommended is True

    def test_medium_confidence_without_amounts(self) -> None:
        score = calculate_confidence_score("Acme Ltd", "Acme Limited", "2024-03-01", "2024-03-02")
        assert score.amount_score == 0
        assert score.total_score == 63
        assert score.level == ConfidenceLevel.MEDIUM
        assert score.is_recommended is True

    def test_low_confidence(self) -> None:
        score = calculate_confidence_score("Acme", "Zenith", "2024-01-01", "2024-06-01")
        assert score.level == ConfidenceLevel.LOW
        assert score.is_recommended is False


class TestMatchAnalysis:
    def test_strong_match_reasons(self) -> None:
        analysis = generate_match_analysis(
            "Acme Ltd", "Acme Limited", "2024-03-01", "2024-03-01", 1000, 1010
        )
        assert analysis.reasons == [
            "Strong name match (95% similarity)",
            "Same date activity and deal",
            "Very similar amounts",
        ]
        assert analysis.risks == []

    def test_missing_amounts_and_large_gap_are_risks(self) -> None:
        analysis = generate_match_analysis("Acme", "Acme", "2024-03-01", "2024-03-21")
        assert "Large date gap (20 days apart)" in analysis.risks
        assert "Missing amount data for comparison" in analysis.risks

    def test_unknown_date_gap(self) -> None:
        analysis = generate_match_analysis("Acme", "Acme", None, "2024-03-01", 10, 10)
        assert "Large date gap (unknown days apart)" in analysis.risks


# ── Validation and Formatting ─────────────────────────────────────────────────


class TestValidation:
    def test_empty_payload(self) -> None:
        result = validate_reconciliation_data({})
        assert result.is_valid is False
        assert result.errors == ["No data provided"]

    def test_activity_errors(self) -> None:
        result = validate_reconciliation_data({"type": "activity", "amount": "lots"})
        assert result.errors == [
            "Activity ID is required",
            "Client name is required",
            "Activity date is required",
            "Activity amount must be a number",
        ]

    def test_valid_deal(self) -> None:
        result = validate_reconciliation_data(
            {"type": "deal", "id": "d1", "company": "Acme", "stage_changed_at": "2024-03-01", "value": 10}
        )
        assert result.is_valid is True
        assert result.errors == []

    def test_sanitize_string(self) -> None:
        assert sanitize_string("  <b>Hi</b>   there ") == "bHi/b there"
        assert sanitize_string(42) == ""


class TestFormatting:
    def test_format_currency(self) -> None:
        assert format_currency(1234.5) == "£1,234.50"
        assert format_currency(-5, "EUR") == "-€5.00"
        assert format_currency("oops", "usd") == "$0.00"

    def test_format_percentage(self) -> None:
        assert format_percentage(50) == "50.0%"
        assert format_percentage(None) == "0%"

    def test_format_date(self) -> None:
        assert format_date("2024-01-15T10:00:00Z") == "15 Jan 2024"
        assert format_date("nope") == "Invalid date"


class TestCsvExport:
    def test_lists_and_dicts_are_flattened(self) -> None:
        body = to_csv([{"id": "a1", "tags": ["x", "y"]}, {"id": None, "tags": {"k": 1}}])
        assert body.splitlines() == ["id,tags", "a1,x;y", ',"{""k"": 1}"']

    def test_no_rows(self) -> None:
        assert to_csv([]) == ""
