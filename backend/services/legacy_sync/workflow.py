"""
Legacy Material Request Sync - Workflow Reconstruction

The legacy system stores a flat status code plus optional per-stage fields for
four fixed approval stages (Review, Budget, Recommending, Final). This module
rebuilds the canonical multi-step approval state from that data.

The reconstruction is pure business logic with no direct HTTP or DB calls:
1. map the legacy status code to a canonical request status
2. build one StageCandidate per fixed stage (included? approver? explicit status?)
3. drop included stages whose approver could not be resolved
4. assign step statuses from (request status, remaining stages)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Tuple

from .fields import (
    Identity, LegacyRow, as_nullable_text, extract_identity, has_identity,
    pick_path, safe_string, to_date,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CANONICAL ENUMS
# =============================================================================

class RequestStatus(str, Enum):
    """Canonical material request status."""
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class StepStatus(str, Enum):
    """Canonical approval step status."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SKIPPED = "SKIPPED"


class ProcessingStatus(str, Enum):
    """Fulfilment sub-status of an approved request."""
    PENDING_PURCHASER = "PENDING_PURCHASER"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class PostingStatus(str, Enum):
    """Posting sub-status of an approved request."""
    PENDING_POSTING = "PENDING_POSTING"
    POSTED = "POSTED"


class RequestSeries(str, Enum):
    PO = "PO"
    JO = "JO"
    OTHERS = "OTHERS"


class RequestType(str, Enum):
    ITEM = "ITEM"
    SERVICE = "SERVICE"


class StageKey(str, Enum):
    """The four fixed legacy approval stages, in order."""
    REVIEW = "review"
    BUDGET = "budget"
    RECOMMENDING = "recommending"
    FINAL = "final"


STAGE_NAMES = {
    StageKey.REVIEW: "Review",
    StageKey.BUDGET: "Budget Approval",
    StageKey.RECOMMENDING: "Recommending Approval",
    StageKey.FINAL: "Final Approval",
}

# Explicit per-stage approval outcomes recorded by the legacy system
APPROVED = "APPROVED"
DISAPPROVED = "DISAPPROVED"

SKIPPED_AFTER_REJECTION_REMARK = "Skipped after rejection"


# =============================================================================
# LEGACY STATUS FAMILIES
# =============================================================================

LEGACY_PENDING_STATUSES = frozenset({
    "FOR_REVIEW",
    "PENDING_BUDGET_APPROVAL",
    "FOR_REC_APPROVAL",
    "FOR_FINAL_APPROVAL",
    "REC_APPROVED",
})

LEGACY_APPROVED_STATUSES = frozenset({
    "FINAL_APPROVED",
    "FOR_SERVING",
    "SERVED",
    "FOR_POSTING",
    "POSTED",
    "RECEIVED",
    "ACKNOWLEDGED",
    "DEPLOYED",
    "TRANSMITTED",
})

LEGACY_POSTED_STATUSES = frozenset({"POSTED", "RECEIVED", "ACKNOWLEDGED", "DEPLOYED", "TRANSMITTED"})

LEGACY_FULLY_SERVED_STATUSES = frozenset({
    "FOR_POSTING",
    "POSTED",
    "RECEIVED",
    "ACKNOWLEDGED",
    "DEPLOYED",
    "TRANSMITTED",
    "SERVED",
})

# Statuses that imply a stage happened even when the row carries no stage data
_RECOMMENDING_IMPLIED_BY = frozenset({"FOR_REC_APPROVAL", "REC_APPROVED", "FOR_FINAL_APPROVAL", "DISAPPROVED"})
_FINAL_IMPLIED_BY = frozenset({"FOR_FINAL_APPROVAL"}) | LEGACY_APPROVED_STATUSES


# =============================================================================
# STATUS MAPPING
# =============================================================================

def normalize_legacy_status(value: Any) -> str:
    return safe_string(value).upper()


def normalize_approval_status(value: Any) -> Optional[str]:
    normalized = safe_string(value).upper()
    if normalized in (APPROVED, DISAPPROVED):
        return normalized
    return None


def map_series(value: Any) -> RequestSeries:
    normalized = safe_string(value).upper()
    if normalized == "PO":
        return RequestSeries.PO
    if normalized == "JO":
        return RequestSeries.JO
    return RequestSeries.OTHERS


def map_request_type(value: Any) -> RequestType:
    return RequestType.SERVICE if safe_string(value).upper() == "SERVICE" else RequestType.ITEM


def map_request_status(
    legacy_status: str,
    has_final_stage: bool,
    final_approval_status: Optional[str],
) -> Optional[RequestStatus]:
    """
    Map a legacy status code to the canonical request status.

    Returns None for unsupported codes.
    """
    if legacy_status in ("DRAFT", "FOR_EDIT"):
        return RequestStatus.DRAFT

    if legacy_status == "CANCELLED":
        return RequestStatus.CANCELLED

    if legacy_status == "DISAPPROVED":
        return RequestStatus.REJECTED

    if legacy_status == "REC_APPROVED":
        # Recommending approval recorded, final approval still outstanding
        if has_final_stage and final_approval_status != APPROVED:
            return RequestStatus.PENDING_APPROVAL
        return RequestStatus.APPROVED

    if legacy_status in LEGACY_PENDING_STATUSES:
        return RequestStatus.PENDING_APPROVAL

    if legacy_status in LEGACY_APPROVED_STATUSES:
        return RequestStatus.APPROVED

    return None


def display_status(legacy_status: str, mapped_status: Optional[RequestStatus]) -> str:
    """Status label shown next to unmatched rows so an operator knows where the row would land."""
    if mapped_status is None:
        return "UNSUPPORTED"

    if mapped_status != RequestStatus.APPROVED:
        return mapped_status.value

    if legacy_status in LEGACY_POSTED_STATUSES:
        return PostingStatus.POSTED.value
    if legacy_status == "FOR_POSTING":
        return PostingStatus.PENDING_POSTING.value
    if legacy_status in ("FOR_SERVING", "SERVED"):
        return ProcessingStatus.PENDING_PURCHASER.value

    return mapped_status.value


def pending_stage_key(legacy_status: str, has_final_stage: bool) -> Optional[StageKey]:
    """The stage awaiting action for a pending legacy status, if any."""
    if legacy_status == "FOR_REVIEW":
        return StageKey.REVIEW
    if legacy_status == "PENDING_BUDGET_APPROVAL":
        return StageKey.BUDGET
    if legacy_status == "FOR_REC_APPROVAL":
        return StageKey.RECOMMENDING
    if legacy_status == "FOR_FINAL_APPROVAL":
        return StageKey.FINAL
    if legacy_status == "REC_APPROVED" and has_final_stage:
        return StageKey.FINAL
    return None


# =============================================================================
# STAGE CANDIDATES
# =============================================================================

@dataclass
class StageCandidate:
    """One fixed legacy stage, as observed in a row."""
    key: StageKey
    name: str
    include: bool
    identity: Identity
    approver_user_id: Optional[str] = None
    approver_reason: Optional[str] = None
    pending: bool = False
    explicit_status: Optional[str] = None
    acted_at: Optional[datetime] = None
    remarks: Optional[str] = None


@dataclass
class StageBuild:
    stages: List[StageCandidate]
    pending_key: Optional[StageKey]
    rec_approval_status: Optional[str] = None
    final_approval_status: Optional[str] = None
    rec_approval_date: Optional[datetime] = None
    final_approval_date: Optional[datetime] = None

    @property
    def has_final_stage(self) -> bool:
        return any(stage.key == StageKey.FINAL and stage.include for stage in self.stages)

    def get(self, key: StageKey) -> Optional[StageCandidate]:
        for stage in self.stages:
            if stage.key == key:
                return stage
        return None


# Legacy field prefix of each stage's approver (e.g. recApproverEmployeeId)
_STAGE_IDENTITY_PATHS = {
    StageKey.REVIEW: "reviewer",
    StageKey.BUDGET: "budgetApprover",
    StageKey.RECOMMENDING: "recApprover",
    StageKey.FINAL: "finalApprover",
}


def stage_approver_employee_number_path(key: StageKey) -> str:
    return f"{_STAGE_IDENTITY_PATHS[key]}EmployeeId"


def extract_stage_identity(row: LegacyRow, key: StageKey) -> Identity:
    prefix = _STAGE_IDENTITY_PATHS[key]
    return extract_identity(
        row,
        employee_number_paths=[f"{prefix}EmployeeId"],
        first_name_paths=[f"{prefix}FirstName"],
        last_name_paths=[f"{prefix}LastName"],
        name_paths=[f"{prefix}Name"],
    )


def _budget_remarks(budget_status: Optional[str], within_budget: bool, remarks: Optional[str]) -> Optional[str]:
    if budget_status != DISAPPROVED:
        return remarks
    prefix = (
        "Legacy budget result: WITHIN_BUDGET"
        if within_budget
        else "Legacy budget result: NOT_WITHIN_BUDGET"
    )
    return f"{prefix}. {remarks}" if remarks else prefix


def build_stage_candidates(
    row: LegacyRow,
    legacy_status: str,
    approver_resolver,
    recommending_employee_number_override: Optional[str] = None,
    final_employee_number_override: Optional[str] = None,
) -> StageBuild:
    """
    Build the four stage candidates for a legacy row.

    A stage is included when it has an explicit status, an acted-at timestamp,
    an identifiable approver, or the legacy status implies it occurred.
    """
    review_status = normalize_approval_status(pick_path(row, ["reviewStatus"]))
    reviewed_at = to_date(pick_path(row, ["reviewedAt"]))

    budget_status = normalize_approval_status(pick_path(row, ["budgetApprovalStatus"]))
    budget_date = to_date(pick_path(row, ["budgetApprovalDate"]))
    within_budget = pick_path(row, ["isWithinBudget"]) is True

    rec_status = normalize_approval_status(pick_path(row, ["recApprovalStatus"]))
    rec_date = to_date(pick_path(row, ["recApprovalDate"]))

    final_status = normalize_approval_status(pick_path(row, ["finalApprovalStatus"]))
    final_date = to_date(pick_path(row, ["finalApprovalDate"]))

    identities = {key: extract_stage_identity(row, key) for key in StageKey}
    if recommending_employee_number_override:
        identities[StageKey.RECOMMENDING].employee_number = recommending_employee_number_override.strip()
    if final_employee_number_override:
        identities[StageKey.FINAL].employee_number = final_employee_number_override.strip()

    include = {
        StageKey.REVIEW: (
            legacy_status == "FOR_REVIEW"
            or review_status is not None
            or reviewed_at is not None
            or has_identity(identities[StageKey.REVIEW])
        ),
        StageKey.BUDGET: (
            legacy_status == "PENDING_BUDGET_APPROVAL"
            or budget_status is not None
            or budget_date is not None
            or has_identity(identities[StageKey.BUDGET])
        ),
        StageKey.RECOMMENDING: (
            legacy_status in _RECOMMENDING_IMPLIED_BY
            or rec_status is not None
            or rec_date is not None
            or has_identity(identities[StageKey.RECOMMENDING])
        ),
        StageKey.FINAL: (
            legacy_status in _FINAL_IMPLIED_BY
            or final_status is not None
            or final_date is not None
            or has_identity(identities[StageKey.FINAL])
        ),
    }

    explicit = {
        StageKey.REVIEW: review_status,
        # Any recorded budget outcome counts as the stage having been acted on
        StageKey.BUDGET: APPROVED if budget_status is not None else None,
        StageKey.RECOMMENDING: rec_status,
        StageKey.FINAL: final_status,
    }
    acted_at = {
        StageKey.REVIEW: reviewed_at,
        StageKey.BUDGET: budget_date,
        StageKey.RECOMMENDING: rec_date,
        StageKey.FINAL: final_date,
    }
    remarks = {
        StageKey.REVIEW: as_nullable_text(pick_path(row, ["reviewRemarks"])),
        StageKey.BUDGET: _budget_remarks(
            budget_status, within_budget, as_nullable_text(pick_path(row, ["budgetRemarks"]))
        ),
        StageKey.RECOMMENDING: as_nullable_text(pick_path(row, ["recApprovalRemarks"])),
        StageKey.FINAL: as_nullable_text(pick_path(row, ["finalApprovalRemarks"])),
    }

    has_final_stage = include[StageKey.FINAL]
    pending_key = pending_stage_key(legacy_status, has_final_stage)

    stages: List[StageCandidate] = []
    for key in StageKey:
        identity = identities[key]
        approver_user_id = None
        approver_reason = None
        if has_identity(identity):
            resolution = approver_resolver.resolve(identity)
            approver_user_id = resolution.matched.user_id if resolution.matched else None
            approver_reason = resolution.reason
        stages.append(StageCandidate(
            key=key,
            name=STAGE_NAMES[key],
            include=include[key],
            identity=identity,
            approver_user_id=approver_user_id,
            approver_reason=approver_reason,
            pending=pending_key == key,
            explicit_status=explicit[key],
            acted_at=acted_at[key],
            remarks=remarks[key],
        ))

    return StageBuild(
        stages=stages,
        pending_key=pending_key,
        rec_approval_status=rec_status,
        final_approval_status=final_status,
        rec_approval_date=rec_date,
        final_approval_date=final_date,
    )


def partition_stages(stages: List[StageCandidate]) -> Tuple[List[StageCandidate], List[StageCandidate]]:
    """Split included stages into (resolved, dropped-for-missing-approver), keeping order."""
    resolved: List[StageCandidate] = []
    dropped: List[StageCandidate] = []
    for stage in stages:
        if not stage.include:
            continue
        if stage.approver_user_id:
            resolved.append(stage)
        else:
            dropped.append(stage)
    return resolved, dropped


# =============================================================================
# STEP ASSIGNMENT
# =============================================================================

@dataclass
class ApprovalStepPlan:
    """An approval step ready to be written."""
    step_number: int
    step_name: str
    approver_user_id: str
    status: StepStatus
    acted_at: Optional[datetime] = None
    acted_by_user_id: Optional[str] = None
    remarks: Optional[str] = None


@dataclass
class StepAssignment:
    steps: List[ApprovalStepPlan] = field(default_factory=list)
    pending_index: int = -1
    rejected_index: int = -1
    current_step: Optional[int] = None

    @property
    def required_steps(self) -> int:
        return len(self.steps)

    @property
    def rejection_step(self) -> Optional[ApprovalStepPlan]:
        return self.steps[self.rejected_index] if self.rejected_index >= 0 else None

    @property
    def last_step(self) -> Optional[ApprovalStepPlan]:
        return self.steps[-1] if self.steps else None


def _step_status(
    mapped_status: RequestStatus,
    stage: StageCandidate,
    index: int,
    pending_index: int,
    rejected_index: int,
) -> StepStatus:
    if mapped_status == RequestStatus.PENDING_APPROVAL:
        if pending_index >= 0 and index < pending_index:
            return StepStatus.APPROVED
        return StepStatus.PENDING

    if mapped_status == RequestStatus.APPROVED:
        return StepStatus.APPROVED

    if mapped_status == RequestStatus.REJECTED:
        if index < rejected_index:
            return StepStatus.APPROVED
        if index == rejected_index:
            return StepStatus.REJECTED
        return StepStatus.SKIPPED

    # DRAFT / CANCELLED keep whatever the legacy system recorded
    if stage.explicit_status == APPROVED:
        return StepStatus.APPROVED
    if stage.explicit_status == DISAPPROVED:
        return StepStatus.REJECTED
    return StepStatus.SKIPPED


def assign_steps(
    mapped_status: RequestStatus,
    stages: List[StageCandidate],
    pending_key: Optional[StageKey],
) -> StepAssignment:
    """
    Turn the resolved stage sequence into numbered approval steps.

    `stages` must contain only included stages with a resolved approver.
    Step numbers are 1..len(stages) with no gaps.
    """
    pending_index = -1
    if mapped_status == RequestStatus.PENDING_APPROVAL and pending_key is not None:
        pending_index = next((i for i, stage in enumerate(stages) if stage.key == pending_key), -1)

    rejected_index = -1
    if mapped_status == RequestStatus.REJECTED and stages:
        rejected_index = next(
            (i for i, stage in enumerate(stages) if stage.explicit_status == DISAPPROVED),
            len(stages) - 1,
        )

    steps: List[ApprovalStepPlan] = []
    for index, stage in enumerate(stages):
        status = _step_status(mapped_status, stage, index, pending_index, rejected_index)
        steps.append(ApprovalStepPlan(
            step_number=index + 1,
            step_name=stage.name,
            approver_user_id=stage.approver_user_id,
            status=status,
            acted_at=None if status == StepStatus.PENDING else stage.acted_at,
            acted_by_user_id=(
                None if status in (StepStatus.PENDING, StepStatus.SKIPPED) else stage.approver_user_id
            ),
            remarks=SKIPPED_AFTER_REJECTION_REMARK if status == StepStatus.SKIPPED else stage.remarks,
        ))

    current_step: Optional[int] = None
    if mapped_status == RequestStatus.PENDING_APPROVAL and pending_index >= 0:
        current_step = pending_index + 1
    elif mapped_status == RequestStatus.REJECTED and rejected_index >= 0:
        current_step = rejected_index + 1
    elif mapped_status == RequestStatus.APPROVED and steps:
        current_step = len(steps)

    return StepAssignment(
        steps=steps,
        pending_index=pending_index,
        rejected_index=rejected_index,
        current_step=current_step,
    )
