"""
Tests for workflow reconstruction: status mapping, stage candidates and
step assignment.
"""
from datetime import datetime, timezone

import pytest

from services.legacy_sync.fields import Identity
from services.legacy_sync.resolvers import ApproverResolver, ApproverUser
from services.legacy_sync.workflow import (
    RequestStatus, StageCandidate, StageKey, StepStatus, SKIPPED_AFTER_REJECTION_REMARK,
    assign_steps, build_stage_candidates, display_status, map_request_status,
    map_request_type, map_series, normalize_approval_status, partition_stages,
    pending_stage_key,
)


def _approvers():
    return ApproverResolver(
        [
            ApproverUser("user-rev", "Paolo", "Reyes"),
            ApproverUser("user-bud", "Ana", "Cruz"),
            ApproverUser("user-rec", "Jose", "Garcia"),
            ApproverUser("user-fin", "Liza", "Ramos"),
        ],
        [("user-rev", "E-200"), ("user-bud", "E-300"), ("user-rec", "E-400"), ("user-fin", "E-500")],
    )


def _stage(key, status=None, user="u", include=True):
    return StageCandidate(
        key=key,
        name=key.value.title(),
        include=include,
        identity=Identity(),
        approver_user_id=user,
        explicit_status=status,
        acted_at=datetime(2024, 3, 2, tzinfo=timezone.utc),
        remarks=f"{key.value} remarks",
    )


class TestStatusMapping:
    """Tests for legacy status mapping."""

    @pytest.mark.parametrize("legacy_status,expected", [
        ("DRAFT", RequestStatus.DRAFT),
        ("FOR_EDIT", RequestStatus.DRAFT),
        ("CANCELLED", RequestStatus.CANCELLED),
        ("DISAPPROVED", RequestStatus.REJECTED),
        ("FOR_REVIEW", RequestStatus.PENDING_APPROVAL),
        ("PENDING_BUDGET_APPROVAL", RequestStatus.PENDING_APPROVAL),
        ("FOR_REC_APPROVAL", RequestStatus.PENDING_APPROVAL),
        ("FOR_FINAL_APPROVAL", RequestStatus.PENDING_APPROVAL),
        ("FINAL_APPROVED", RequestStatus.APPROVED),
        ("SERVED", RequestStatus.APPROVED),
        ("TRANSMITTED", RequestStatus.APPROVED),
        ("ARCHIVED", None),
    ])
    def test_map_request_status(self, legacy_status, expected):
        assert map_request_status(legacy_status, False, None) == expected

    def test_rec_approved_depends_on_final_stage(self):
        assert map_request_status("REC_APPROVED", True, None) == RequestStatus.PENDING_APPROVAL
        assert map_request_status("REC_APPROVED", True, "APPROVED") == RequestStatus.APPROVED
        assert map_request_status("REC_APPROVED", False, None) == RequestStatus.APPROVED

    def test_pending_stage_key(self):
        assert pending_stage_key("FOR_REVIEW", False) == StageKey.REVIEW
        assert pending_stage_key("PENDING_BUDGET_APPROVAL", False) == StageKey.BUDGET
        assert pending_stage_key("FOR_REC_APPROVAL", False) == StageKey.RECOMMENDING
        assert pending_stage_key("FOR_FINAL_APPROVAL", False) == StageKey.FINAL
        assert pending_stage_key("REC_APPROVED", True) == StageKey.FINAL
        assert pending_stage_key("REC_APPROVED", False) is None
        assert pending_stage_key("FINAL_APPROVED", True) is None

    def test_display_status(self):
        assert display_status("ARCHIVED", None) == "UNSUPPORTED"
        assert display_status("FOR_REVIEW", RequestStatus.PENDING_APPROVAL) == "PENDING_APPROVAL"
        assert display_status("POSTED", RequestStatus.APPROVED) == "POSTED"
        assert display_status("FOR_POSTING", RequestStatus.APPROVED) == "PENDING_POSTING"
        assert display_status("SERVED", RequestStatus.APPROVED) == "PENDING_PURCHASER"
        assert display_status("FINAL_APPROVED", RequestStatus.APPROVED) == "APPROVED"

    def test_small_mappers(self):
        assert map_series("jo") == "JO"
        assert map_series("misc").value == "OTHERS"
        assert map_request_type("service").value == "SERVICE"
        assert map_request_type(None).value == "ITEM"
        assert normalize_approval_status(" approved ") == "APPROVED"
        assert normalize_approval_status("MAYBE") is None


class TestBuildStageCandidates:
    """Tests for build_stage_candidates."""

    def test_status_implies_stages_without_data(self):
        build = build_stage_candidates({"status": "FOR_FINAL_APPROVAL"}, "FOR_FINAL_APPROVAL", _approvers())

        included = [stage.key for stage in build.stages if stage.include]
        assert included == [StageKey.RECOMMENDING, StageKey.FINAL]
        assert build.pending_key == StageKey.FINAL
        assert all(stage.approver_user_id is None for stage in build.stages)

    def test_rec_approval_does_not_imply_final(self):
        build = build_stage_candidates({}, "FOR_REC_APPROVAL", _approvers())

        assert build.get(StageKey.RECOMMENDING).include
        assert not build.get(StageKey.FINAL).include
        assert not build.has_final_stage

    def test_stage_data_includes_stage_and_resolves_approver(self):
        row = {
            "reviewerEmployeeId": "E-200",
            "reviewStatus": "approved",
            "reviewedAt": "2024-03-02T01:00:00Z",
            "reviewRemarks": "ok",
            "budgetApproverName": "Cruz, Ana",
        }
        build = build_stage_candidates(row, "FOR_REC_APPROVAL", _approvers())

        review = build.get(StageKey.REVIEW)
        assert review.include
        assert review.approver_user_id == "user-rev"
        assert review.explicit_status == "APPROVED"
        assert review.acted_at == datetime(2024, 3, 2, 1, tzinfo=timezone.utc)
        assert review.remarks == "ok"

        budget = build.get(StageKey.BUDGET)
        assert budget.include
        assert budget.approver_user_id == "user-bud"

    def test_unresolved_approver_keeps_reason(self):
        build = build_stage_candidates({"recApproverEmployeeId": "E-999"}, "FOR_REC_APPROVAL", _approvers())

        rec = build.get(StageKey.RECOMMENDING)
        assert rec.approver_user_id is None
        assert rec.approver_reason == "APPROVER_NOT_FOUND"

    def test_overrides_replace_employee_numbers(self):
        row = {"recApproverEmployeeId": "E-999", "finalApproverEmployeeId": "E-998"}
        build = build_stage_candidates(
            row, "FINAL_APPROVED", _approvers(),
            recommending_employee_number_override="E-400",
            final_employee_number_override=" E-500 ",
        )

        assert build.get(StageKey.RECOMMENDING).approver_user_id == "user-rec"
        assert build.get(StageKey.FINAL).approver_user_id == "user-fin"

    def test_budget_outcome_counts_as_approved_and_keeps_result_remark(self):
        row = {
            "budgetApproverEmployeeId": "E-300",
            "budgetApprovalStatus": "DISAPPROVED",
            "isWithinBudget": False,
            "budgetRemarks": "over by 10%",
        }
        build = build_stage_candidates(row, "FOR_REC_APPROVAL", _approvers())

        budget = build.get(StageKey.BUDGET)
        assert budget.explicit_status == "APPROVED"
        assert budget.remarks == "Legacy budget result: NOT_WITHIN_BUDGET. over by 10%"

    def test_rec_approved_with_final_data_is_pending_final(self):
        row = {"finalApproverEmployeeId": "E-500"}
        build = build_stage_candidates(row, "REC_APPROVED", _approvers())

        assert build.has_final_stage
        assert build.pending_key == StageKey.FINAL
        assert build.get(StageKey.FINAL).pending


class TestPartitionStages:
    """Tests for dropping stages without approvers."""

    def test_partition_keeps_order_and_ignores_excluded(self):
        stages = [
            _stage(StageKey.REVIEW, user=None),
            _stage(StageKey.BUDGET, include=False),
            _stage(StageKey.RECOMMENDING),
            _stage(StageKey.FINAL),
        ]
        resolved, dropped = partition_stages(stages)

        assert [stage.key for stage in resolved] == [StageKey.RECOMMENDING, StageKey.FINAL]
        assert [stage.key for stage in dropped] == [StageKey.REVIEW]


class TestAssignSteps:
    """Tests for step status assignment."""

    def test_pending_marks_earlier_approved_and_clears_actor(self):
        stages = [_stage(StageKey.REVIEW), _stage(StageKey.BUDGET), _stage(StageKey.RECOMMENDING)]
        assignment = assign_steps(RequestStatus.PENDING_APPROVAL, stages, StageKey.RECOMMENDING)

        assert [step.status for step in assignment.steps] == [
            StepStatus.APPROVED, StepStatus.APPROVED, StepStatus.PENDING,
        ]
        assert assignment.current_step == 3
        pending = assignment.steps[2]
        assert pending.acted_at is None
        assert pending.acted_by_user_id is None
        assert assignment.steps[0].acted_by_user_id == "u"

    def test_pending_without_pending_stage_has_no_current_step(self):
        stages = [_stage(StageKey.REVIEW)]
        assignment = assign_steps(RequestStatus.PENDING_APPROVAL, stages, StageKey.FINAL)

        assert assignment.current_step is None
        assert assignment.steps[0].status == StepStatus.PENDING

    def test_approved_all_steps_approved(self):
        stages = [_stage(StageKey.RECOMMENDING), _stage(StageKey.FINAL)]
        assignment = assign_steps(RequestStatus.APPROVED, stages, None)

        assert {step.status for step in assignment.steps} == {StepStatus.APPROVED}
        assert assignment.current_step == 2
        assert assignment.last_step.step_number == 2

    def test_rejected_at_explicit_stage_then_skipped(self):
        stages = [
            _stage(StageKey.REVIEW, status="APPROVED"),
            _stage(StageKey.RECOMMENDING, status="DISAPPROVED"),
            _stage(StageKey.FINAL),
        ]
        assignment = assign_steps(RequestStatus.REJECTED, stages, None)

        assert [step.status for step in assignment.steps] == [
            StepStatus.APPROVED, StepStatus.REJECTED, StepStatus.SKIPPED,
        ]
        assert assignment.current_step == 2
        assert assignment.rejection_step.remarks == "recommending remarks"
        skipped = assignment.steps[2]
        assert skipped.remarks == SKIPPED_AFTER_REJECTION_REMARK
        assert skipped.acted_by_user_id is None

    def test_rejected_without_explicit_stage_rejects_last(self):
        stages = [_stage(StageKey.REVIEW), _stage(StageKey.RECOMMENDING)]
        assignment = assign_steps(RequestStatus.REJECTED, stages, None)

        assert [step.status for step in assignment.steps] == [StepStatus.APPROVED, StepStatus.REJECTED]
        assert assignment.current_step == 2

    @pytest.mark.parametrize("mapped_status", [RequestStatus.DRAFT, RequestStatus.CANCELLED])
    def test_draft_and_cancelled_keep_recorded_outcomes(self, mapped_status):
        stages = [
            _stage(StageKey.REVIEW, status="APPROVED"),
            _stage(StageKey.BUDGET, status="DISAPPROVED"),
            _stage(StageKey.RECOMMENDING),
        ]
        assignment = assign_steps(mapped_status, stages, None)

        assert [step.status for step in assignment.steps] == [
            StepStatus.APPROVED, StepStatus.REJECTED, StepStatus.SKIPPED,
        ]
        assert assignment.current_step is None

    def test_step_numbers_are_contiguous(self):
        stages = [_stage(StageKey.BUDGET), _stage(StageKey.FINAL)]
        assignment = assign_steps(RequestStatus.APPROVED, stages, None)

        assert [step.step_number for step in assignment.steps] == [1, 2]
        assert assignment.required_steps == 2

    def test_no_stages(self):
        assignment = assign_steps(RequestStatus.APPROVED, [], None)

        assert assignment.steps == []
        assert assignment.current_step is None
        assert assignment.required_steps == 0
