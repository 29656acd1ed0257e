"""
Legacy Material Request Sync - Classification & Reporting

Every fetched row terminates in exactly one bucket:
- processed: committed (or counted as such in a dry run)
- skipped:   known, non-blocking condition that no override can fix
- unmatched: identity/stage resolution failed; needs a manual override
- error:     unexpected exception while processing that single row

Dropped-stage notices are recorded as extra skip entries on rows that still
go on to be processed.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DOMAIN = "material-request"


# =============================================================================
# SKIP REASONS
# =============================================================================

MISSING_LEGACY_RECORD_ID = "MISSING_LEGACY_RECORD_ID"
ALREADY_SYNCED = "ALREADY_SYNCED"
MISSING_STATUS = "MISSING_STATUS"
INVALID_DATE_PREPARED_OR_REQUIRED = "INVALID_DATE_PREPARED_OR_REQUIRED"
NO_VALID_ITEMS = "NO_VALID_ITEMS"
UNSUPPORTED_STATUS = "UNSUPPORTED_STATUS"
PENDING_STATUS_WITHOUT_PENDING_STAGE = "PENDING_STATUS_WITHOUT_PENDING_STAGE"
PENDING_STATUS_WITHOUT_CURRENT_STEP = "PENDING_STATUS_WITHOUT_CURRENT_STEP"
REQUESTER_HAS_NO_LINKED_USER = "REQUESTER_HAS_NO_LINKED_USER"


def dropped_stage_reason(stage_key: str) -> str:
    return f"DROPPED_STAGE_WITHOUT_APPROVER_{stage_key.upper()}"


def pending_stage_not_resolved_reason(stage_key: str) -> str:
    return f"PENDING_STAGE_NOT_RESOLVED_{stage_key.upper()}"


def stage_not_resolved_reason(stage_key: str) -> str:
    return f"STAGE_NOT_RESOLVED_{stage_key.upper()}"


# =============================================================================
# REPORT ROWS
# =============================================================================

@dataclass
class UnmatchedRow:
    """
    A row that needs a manual override. Carries every hint an operator needs
    to build that override.
    """
    reason: str
    legacy_record_id: str
    request_number: str
    legacy_status: str
    mapped_status: str
    pending_step_name: Optional[str] = None
    pending_approver_employee_number: str = ""
    recommending_approver_employee_number: str = ""
    recommending_approver_name: str = ""
    recommending_approval_status: str = ""
    final_approver_employee_number: str = ""
    final_approver_name: str = ""
    final_approval_status: str = ""
    legacy_department_code: str = ""
    legacy_department_name: str = ""
    department_code: str = ""
    department_name: str = ""
    employee_number: str = ""
    requester_name: str = ""
    domain: str = DOMAIN

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SkippedRow:
    reason: str
    legacy_record_id: str
    request_number: str
    status: Optional[str] = None
    domain: str = DOMAIN

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        if self.status is None:
            result.pop("status")
        return result


@dataclass
class ErrorRow:
    legacy_record_id: str
    message: str
    domain: str = DOMAIN

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# SUMMARY
# =============================================================================

@dataclass
class FetchedCounts:
    material_requests: int = 0
    items: int = 0


@dataclass
class ProcessedCounts:
    material_requests: int = 0
    items: int = 0
    approval_steps: int = 0
    serve_batches: int = 0
    postings: int = 0


@dataclass
class SyncSummary:
    fetched: FetchedCounts = field(default_factory=FetchedCounts)
    processed: ProcessedCounts = field(default_factory=ProcessedCounts)
    unmatched_count: int = 0
    skipped_count: int = 0
    error_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncReport:
    """Result of a legacy sync run."""
    dry_run: bool
    source_name: str
    started_at: str = ""
    completed_at: str = ""
    duration_seconds: float = 0.0
    summary: SyncSummary = field(default_factory=SyncSummary)
    unmatched: List[UnmatchedRow] = field(default_factory=list)
    skipped: List[SkippedRow] = field(default_factory=list)
    errors: List[ErrorRow] = field(default_factory=list)

    def record_processed(
        self,
        items: int,
        approval_steps: int,
        serve_batch: bool,
        posting: bool,
    ) -> None:
        processed = self.summary.processed
        processed.material_requests += 1
        processed.items += items
        processed.approval_steps += approval_steps
        if serve_batch:
            processed.serve_batches += 1
        if posting:
            processed.postings += 1

    def record_skip(
        self,
        reason: str,
        legacy_record_id: str,
        request_number: str,
        status: Optional[str] = None,
    ) -> None:
        self.skipped.append(SkippedRow(reason, legacy_record_id, request_number, status))
        logger.info(f"Skipped legacy record {legacy_record_id}: {reason}")

    def record_unmatched(self, row: UnmatchedRow) -> None:
        self.unmatched.append(row)
        logger.warning(f"Unmatched legacy record {row.legacy_record_id}: {row.reason}")

    def record_error(self, legacy_record_id: str, request_number: str, error: str) -> None:
        message = f"Legacy record {legacy_record_id} ({request_number}): {error}"
        self.errors.append(ErrorRow(legacy_record_id, message))
        logger.error(f"Error syncing {message}")

    def finalize(self) -> None:
        self.summary.unmatched_count = len(self.unmatched)
        self.summary.skipped_count = len(self.skipped)
        self.summary.error_count = len(self.errors)

    def to_dict(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """Convert to dictionary; `limit` truncates each itemized list."""
        return {
            "dry_run": self.dry_run,
            "source_name": self.source_name,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
            "summary": self.summary.to_dict(),
            "unmatched": [row.to_dict() for row in self.unmatched[:limit]],
            "skipped": [row.to_dict() for row in self.skipped[:limit]],
            "errors": [row.to_dict() for row in self.errors[:limit]],
        }
