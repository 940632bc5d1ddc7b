"""
Batch Validator for usage imports.

Applies business validation to every normalized unit of a batch and splits it
into accepted ``UsageRecord`` objects and positioned rejections. A bad record
never stops the scan; the only whole-batch short-circuit is the end-of-data
marker of tabular batches (two consecutive fully blank rows).

Rules, in order:
1. structured records must be objects carrying all 13 vocabulary fields
2. admin username must be present and non-blank
3. every quantity must be a valid non-negative number (counts: whole numbers)
4. at least one of the 12 quantity slots must be greater than zero
5. an admin username may appear only once per batch
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import structlog

from .errors import BatchFormatError
from .models import RowIssue, UsageRecord
from .normalizer import IssueKind, UsageCandidate, UsageNormalizer

logger = structlog.get_logger(__name__)

REASON_USERNAME_REQUIRED = "admin username required"
REASON_NO_SUBSCRIPTION_DATA = "no subscription data present"
REASON_BLANK_ROW = "blank row skipped"


@dataclass(frozen=True)
class Accepted:
    """A unit that passed validation"""
    record: UsageRecord

    @property
    def position(self) -> int:
        return self.record.position


@dataclass(frozen=True)
class Rejected:
    """A unit that failed validation, with every reason found"""
    position: int
    reasons: Tuple[str, ...]
    admin_username: str = ""

    @property
    def issue(self) -> RowIssue:
        return RowIssue(self.position, "; ".join(self.reasons))


ValidationOutcome = Union[Accepted, Rejected]


@dataclass
class ValidationReport:
    """Per-unit outcomes of one batch, in input order"""
    outcomes: List[ValidationOutcome] = field(default_factory=list)
    notices: List[RowIssue] = field(default_factory=list)
    end_of_data_at: Optional[int] = None

    @property
    def valid(self) -> List[UsageRecord]:
        return [outcome.record for outcome in self.outcomes if isinstance(outcome, Accepted)]

    @property
    def rejected(self) -> List[Rejected]:
        return [outcome for outcome in self.outcomes if isinstance(outcome, Rejected)]

    @property
    def total_rows(self) -> int:
        """Units scanned before the end-of-data marker, blank rows included"""
        return len(self.outcomes) + len(self.notices)


def _issue_reason(issue) -> str:
    if issue.kind == IssueKind.MISSING:
        return f"field '{issue.field}' is required"
    if issue.kind == IssueKind.NOT_AN_OBJECT:
        return "record must be an object"
    if issue.kind == IssueKind.NOT_WHOLE:
        return f"{issue.field} must be a valid non-negative whole number"
    return f"{issue.field} must be a valid non-negative number"


class BatchValidator:
    """Validates tabular and structured usage batches"""

    def __init__(self, normalizer: Optional[UsageNormalizer] = None):
        self.normalizer = normalizer or UsageNormalizer()
        self._logger = logger.bind(component="batch_validator")

    def validate_candidate(self, candidate: UsageCandidate) -> ValidationOutcome:
        """
        Validate one normalized unit (duplicate detection is batch-level).

        Returns:
            Accepted with a typed UsageRecord, or Rejected with all reasons found
        """
        reasons: List[str] = []

        structural = [i for i in candidate.issues if i.kind in (IssueKind.NOT_AN_OBJECT, IssueKind.MISSING)]
        reasons.extend(_issue_reason(issue) for issue in structural)
        if any(i.kind == IssueKind.NOT_AN_OBJECT for i in structural):
            return Rejected(candidate.position, tuple(reasons))

        if not candidate.admin_username:
            reasons.append(REASON_USERNAME_REQUIRED)

        numeric = [i for i in candidate.issues if i.kind not in (IssueKind.NOT_AN_OBJECT, IssueKind.MISSING)]
        reasons.extend(_issue_reason(issue) for issue in numeric)

        has_usage = any(v > 0 for v in candidate.limited_volumes) or any(c > 0 for c in candidate.unlimited_counts)
        if not numeric and not has_usage:
            reasons.append(REASON_NO_SUBSCRIPTION_DATA)

        if reasons:
            return Rejected(candidate.position, tuple(reasons), candidate.admin_username)

        return Accepted(UsageRecord(
            admin_username=candidate.admin_username,
            position=candidate.position,
            limited_volumes=candidate.limited_volumes,
            unlimited_counts=candidate.unlimited_counts,
            full_name=candidate.full_name,
            phone=candidate.phone,
            telegram_id=candidate.telegram_id,
            store_name=candidate.store_name,
            price_per_gb_override=candidate.price_per_gb_override,
            unlimited_price_override=candidate.unlimited_price_override,
        ))

    def validate_tabular(self, rows: Sequence[Optional[Sequence[Any]]]) -> ValidationReport:
        """
        Validate a spreadsheet batch.

        The header row(s) are skipped. Positions are 1-based data row numbers.
        Two consecutive blank rows end the scan; a single blank row is skipped
        with a notice.
        """
        if not isinstance(rows, (list, tuple)):
            raise BatchFormatError("tabular batch must be a sequence of rows")

        report = ValidationReport()
        seen: Dict[str, int] = {}
        pending_blank: Optional[int] = None

        data_rows = rows[self.normalizer.tabular_layout.header_rows:]
        for position, row in enumerate(data_rows, start=1):
            candidate = self.normalizer.normalize_row(row, position)

            if candidate.blank:
                if pending_blank is not None:
                    report.end_of_data_at = pending_blank
                    self._logger.info("end_of_data_marker", position=pending_blank)
                    pending_blank = None
                    break
                pending_blank = position
                continue

            if pending_blank is not None:
                report.notices.append(RowIssue(pending_blank, REASON_BLANK_ROW))
                pending_blank = None

            report.outcomes.append(self._check_duplicate(self.validate_candidate(candidate), seen))

        if pending_blank is not None:
            report.notices.append(RowIssue(pending_blank, REASON_BLANK_ROW))

        self._log_report("tabular", report)
        return report

    def validate_structured(self, records: Any) -> ValidationReport:
        """
        Validate a structured batch: a non-empty list of JSON-like objects.

        Raises:
            BatchFormatError: If the batch is not a list or is empty
        """
        if not isinstance(records, (list, tuple)):
            raise BatchFormatError("structured batch must be a list of records")
        if len(records) == 0:
            raise BatchFormatError("structured batch is empty")

        report = ValidationReport()
        seen: Dict[str, int] = {}
        for position, record in enumerate(records, start=1):
            candidate = self.normalizer.normalize_record(record, position)
            report.outcomes.append(self._check_duplicate(self.validate_candidate(candidate), seen))

        self._log_report("structured", report)
        return report

    def _check_duplicate(self, outcome: ValidationOutcome, seen: Dict[str, int]) -> ValidationOutcome:
        if not isinstance(outcome, Accepted):
            return outcome
        username = outcome.record.admin_username
        first = seen.get(username)
        if first is not None:
            return Rejected(
                outcome.position,
                (f"duplicate admin username '{username}' (first seen at row {first})",),
                username,
            )
        seen[username] = outcome.position
        return outcome

    def _log_report(self, source: str, report: ValidationReport) -> None:
        self._logger.info(
            "batch_validated",
            source=source,
            total_rows=report.total_rows,
            valid=len(report.valid),
            rejected=len(report.rejected),
            blank_rows=len(report.notices),
            terminated_early=report.end_of_data_at is not None,
        )
        for rejection in report.rejected:
            self._logger.debug("record_rejected", position=rejection.position, reasons=list(rejection.reasons))
