"""
Tests for the Batch Validator.
"""

from decimal import Decimal

import pytest

from billing_engine.services.billing.errors import BatchFormatError
from billing_engine.services.billing.models import RowIssue
from billing_engine.services.billing.validator import Accepted, BatchValidator, Rejected
from billing_engine.tests.factories import HEADER, blank_row, make_record, make_row


@pytest.fixture
def validator():
    return BatchValidator()


class TestTabularValidation:

    def test_mixed_batch_rejects_only_the_bad_row(self, validator):
        rows = [
            HEADER,
            make_row("alice", limited={1: 5}),
            make_row("bob", limited={1: -3}),
            make_row("carol", unlimited={2: 1}),
        ]

        report = validator.validate_tabular(rows)

        assert [record.admin_username for record in report.valid] == ["alice", "carol"]
        assert len(report.rejected) == 1
        rejection = report.rejected[0]
        assert rejection.position == 2
        assert "non-negative number" in rejection.reasons[0]
        assert report.total_rows == 3

    def test_one_malformed_row_never_costs_valid_rows(self, validator):
        rows = [HEADER] + [make_row(f"rep{i}", limited={1: 1}) for i in range(10)]
        rows.insert(5, make_row("broken", limited={1: "n/a"}))

        report = validator.validate_tabular(rows)

        assert len(report.valid) == 10
        assert len(report.rejected) == 1

    def test_outcomes_keep_input_order(self, validator):
        rows = [HEADER, make_row("", limited={1: 1}), make_row("alice", limited={1: 1})]

        report = validator.validate_tabular(rows)

        assert isinstance(report.outcomes[0], Rejected)
        assert isinstance(report.outcomes[1], Accepted)
        assert [outcome.position for outcome in report.outcomes] == [1, 2]

    def test_missing_username(self, validator):
        report = validator.validate_tabular([HEADER, make_row("   ", limited={1: 1})])

        assert report.rejected[0].reasons == ("admin username required",)

    def test_no_subscription_data(self, validator):
        report = validator.validate_tabular([HEADER, make_row("alice", full_name="Alice")])

        assert report.rejected[0].reasons == ("no subscription data present",)

    def test_all_reasons_are_reported(self, validator):
        report = validator.validate_tabular([HEADER, make_row("", limited={1: "x"}, unlimited={2: 1.5})])

        assert report.rejected[0].reasons == (
            "admin username required",
            "column 8 (limited 1-month volume) must be a valid non-negative number",
            "column 21 (unlimited 2-month count) must be a valid non-negative whole number",
        )
        assert str(report.rejected[0].issue).startswith("row 1: admin username required; ")

    def test_duplicate_username_in_batch(self, validator):
        rows = [HEADER, make_row("alice", limited={1: 1}), make_row("alice", limited={2: 1})]

        report = validator.validate_tabular(rows)

        assert len(report.valid) == 1
        assert report.rejected[0].position == 2
        assert "duplicate admin username 'alice'" in report.rejected[0].reasons[0]

    def test_two_blank_rows_end_the_batch(self, validator):
        rows = [
            HEADER,
            make_row("alice", limited={1: 1}),
            make_row("bob", limited={1: 1}),
            blank_row(),
            [],
            make_row("carol", limited={1: 1}),
            make_row("dave", limited={1: 1}),
        ]

        report = validator.validate_tabular(rows)

        assert [record.admin_username for record in report.valid] == ["alice", "bob"]
        assert report.total_rows == 2
        assert report.notices == []
        assert report.end_of_data_at == 3

    def test_single_blank_row_is_skipped_with_notice(self, validator):
        rows = [HEADER, make_row("alice", limited={1: 1}), blank_row(), make_row("bob", limited={1: 1})]

        report = validator.validate_tabular(rows)

        assert [record.position for record in report.valid] == [1, 3]
        assert report.notices == [RowIssue(2, "blank row skipped")]
        assert report.total_rows == 3
        assert report.end_of_data_at is None

    def test_header_only(self, validator):
        report = validator.validate_tabular([HEADER])

        assert report.outcomes == []
        assert report.total_rows == 0

    def test_rows_must_be_a_sequence(self, validator):
        with pytest.raises(BatchFormatError):
            validator.validate_tabular("alice,5")

    def test_accepted_record_is_typed(self, validator):
        report = validator.validate_tabular([HEADER, make_row("alice", limited={3: "2.5"}, price_per_gb="100")])

        record = report.valid[0]
        assert record.limited_volumes[2] == Decimal("2.5")
        assert record.price_per_gb_override == Decimal("100")
        assert record.has_usage


class TestStructuredValidation:

    def test_valid_records(self, validator):
        report = validator.validate_structured([
            make_record("alice", limited_1_month_volume=5),
            make_record("bob", unlimited_3_month=2),
        ])

        assert [record.position for record in report.valid] == [1, 2]
        assert report.rejected == []

    def test_missing_field_is_a_hard_error(self, validator):
        record = make_record("alice", limited_1_month_volume=5)
        del record["limited_4_month_volume"]

        report = validator.validate_structured([record])

        assert report.rejected[0].reasons == ("field 'limited_4_month_volume' is required",)

    def test_non_object_record(self, validator):
        report = validator.validate_structured([make_record("alice", unlimited_1_month=1), "bob"])

        assert len(report.valid) == 1
        assert report.rejected[0].position == 2
        assert report.rejected[0].reasons == ("record must be an object",)

    def test_negative_quantity(self, validator):
        report = validator.validate_structured([make_record("alice", unlimited_2_month=-1)])

        assert report.rejected[0].reasons == ("unlimited_2_month must be a valid non-negative number",)

    @pytest.mark.parametrize("payload", [{"admin_username": "alice"}, "[]", None])
    def test_batch_must_be_a_list(self, validator, payload):
        with pytest.raises(BatchFormatError):
            validator.validate_structured(payload)

    def test_empty_batch(self, validator):
        with pytest.raises(BatchFormatError):
            validator.validate_structured([])
