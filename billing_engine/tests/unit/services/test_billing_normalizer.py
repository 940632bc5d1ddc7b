"""
Tests for the Usage Record Normalizer.

Covers the positional spreadsheet mapping, the structured vocabulary and the
lenient coercion rules (blank cells, localized digits, unreadable numbers).
"""

from decimal import Decimal

import pytest

from billing_engine.services.billing.normalizer import (
    IssueKind,
    UsageNormalizer,
    is_blank_row,
    normalize_text,
    parse_count,
    parse_number,
    parse_price,
)
from billing_engine.tests.factories import blank_row, make_record, make_row


class TestParsing:
    """Cell-level coercion"""

    @pytest.mark.parametrize("value, expected", [
        (None, Decimal("0")),
        ("", Decimal("0")),
        ("   ", Decimal("0")),
        (5, Decimal("5")),
        (2.5, Decimal("2.5")),
        (" 12 ", Decimal("12")),
        ("1,500", Decimal("1500")),
        ("۱۲۰", Decimal("120")),
    ])
    def test_parse_number_accepts(self, value, expected):
        number, issue = parse_number(value)
        assert issue is None
        assert number == expected

    @pytest.mark.parametrize("value", ["abc", "1..2", True, [1], "NaN"])
    def test_parse_number_rejects_unreadable_values(self, value):
        number, issue = parse_number(value)
        assert number == Decimal("0")
        assert issue == IssueKind.NOT_A_NUMBER

    def test_negative_number_keeps_value_and_reports_issue(self):
        number, issue = parse_number("-3")
        assert number == Decimal("-3")
        assert issue == IssueKind.NEGATIVE

    @pytest.mark.parametrize("value", ["10000000000000000000000000", 10 ** 13, "-1e20"])
    def test_parse_number_rejects_oversized_values(self, value):
        assert parse_number(value) == (Decimal("0"), IssueKind.OUT_OF_RANGE)
        assert parse_count(value) == (0, IssueKind.OUT_OF_RANGE)
        assert parse_price(value) is None

    def test_parse_count(self):
        assert parse_count("4") == (4, None)
        assert parse_count(3.0) == (3, None)
        assert parse_count(1.5) == (0, IssueKind.NOT_WHOLE)
        assert parse_count("x") == (0, IssueKind.NOT_A_NUMBER)

    def test_parse_price_ignores_unusable_values(self):
        assert parse_price("3500") == Decimal("3500")
        assert parse_price("0") is None
        assert parse_price("-10") is None
        assert parse_price("free") is None
        assert parse_price(None) is None

    def test_normalize_text(self):
        assert normalize_text("  alice ") == "alice"
        assert normalize_text(9123456789.0) == "9123456789"
        assert normalize_text(None) == ""

    def test_is_blank_row(self):
        assert is_blank_row(None)
        assert is_blank_row([])
        assert is_blank_row([None, "", "  "])
        assert not is_blank_row([None, 0])


class TestTabularRows:
    """Positional mapping through the v1 layout"""

    def setup_method(self):
        self.normalizer = UsageNormalizer()

    def test_columns_map_to_fields(self):
        row = make_row(
            " alice ",
            limited={1: "5", 6: 2},
            unlimited={3: "2"},
            price_per_gb="3200",
            unlimited_price=45000,
            full_name="Alice Store",
        )
        row[2] = "09120000000"
        row[3] = "@alice"
        row[4] = "Shop"

        candidate = self.normalizer.normalize_row(row, position=1)

        assert candidate.admin_username == "alice"
        assert candidate.full_name == "Alice Store"
        assert candidate.phone == "09120000000"
        assert candidate.telegram_id == "@alice"
        assert candidate.store_name == "Shop"
        assert candidate.price_per_gb_override == Decimal("3200")
        assert candidate.unlimited_price_override == Decimal("45000")
        assert candidate.limited_volumes == (Decimal("5"), 0, 0, 0, 0, Decimal("2"))
        assert candidate.unlimited_counts == (0, 0, 2, 0, 0, 0)
        assert candidate.issues == ()
        assert not candidate.blank

    def test_reserved_columns_are_ignored(self):
        row = make_row("alice", limited={1: 1})
        for column in range(13, 19):
            row[column] = 999

        candidate = self.normalizer.normalize_row(row, position=1)

        assert sum(candidate.limited_volumes) == Decimal("1")
        assert sum(candidate.unlimited_counts) == 0

    def test_short_row_is_padded(self):
        candidate = self.normalizer.normalize_row(["alice", "", "", "", "", "", "", "7"], position=4)

        assert candidate.position == 4
        assert candidate.limited_volumes[0] == Decimal("7")
        assert candidate.unlimited_counts == (0,) * 6

    def test_blank_row_is_flagged(self):
        assert self.normalizer.normalize_row(blank_row(), position=2).blank
        assert self.normalizer.normalize_row(None, position=2).blank

    def test_bad_cells_are_coerced_and_reported(self):
        row = make_row("alice", limited={2: "lots"}, unlimited={1: -1})

        candidate = self.normalizer.normalize_row(row, position=3)

        assert candidate.limited_volumes[1] == Decimal("0")
        kinds = {issue.field: issue.kind for issue in candidate.issues}
        assert kinds == {
            "column 9 (limited 2-month volume)": IssueKind.NOT_A_NUMBER,
            "column 20 (unlimited 1-month count)": IssueKind.NEGATIVE,
        }


class TestStructuredRecords:
    """Structured vocabulary"""

    def setup_method(self):
        self.normalizer = UsageNormalizer()

    def test_fields_map_by_name(self):
        record = make_record("bob", limited_2_month_volume="10", unlimited_3_month=2)

        candidate = self.normalizer.normalize_record(record, position=1)

        assert candidate.admin_username == "bob"
        assert candidate.limited_volumes[1] == Decimal("10")
        assert candidate.unlimited_counts[2] == 2
        assert candidate.issues == ()

    def test_missing_key_is_distinct_from_empty_value(self):
        record = make_record("bob", limited_1_month_volume="")
        del record["unlimited_6_month"]

        candidate = self.normalizer.normalize_record(record, position=1)

        assert [(i.field, i.kind) for i in candidate.issues] == [("unlimited_6_month", IssueKind.MISSING)]

    def test_non_object_record(self):
        candidate = self.normalizer.normalize_record(["bob"], position=5)

        assert candidate.position == 5
        assert candidate.issues[0].kind == IssueKind.NOT_AN_OBJECT
