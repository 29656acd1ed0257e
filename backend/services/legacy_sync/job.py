"""
Legacy Material Request Sync - Sync Job

This module implements the run that imports legacy material requests into the
canonical approval model.

The sync job:
1. Builds the requester, approver and department indexes for the company
2. Fetches all candidate rows from a LegacyRowSource (once)
3. Optionally narrows the rows to a replay list of legacy record ids
4. Looks up which rows were already imported, in one query
5. Reconstructs and commits each row in its own transaction, one at a time
6. Reports every row as processed, skipped, unmatched or errored
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from .committer import CommitBundle, MaterialRequestCommitter, PostingPlan, ServeBatchPlan
from .config import (
    LEGACY_SOURCE_SYSTEM, STAGE_POLICY_DROP, STAGE_POLICY_UNMATCHED,
    get_unresolved_stage_policy,
)
from .fields import (
    Identity, LegacyRow, as_nullable_text, extract_identity, has_identity,
    pick_path, safe_string, split_name, to_date, to_utc_date_only,
)
from .items import (
    Fulfilment, NormalizedItem, compute_financials, compute_fulfilment, normalize_items,
)
from .overrides import ManualOverride, build_override_lookup
from .report import (
    ALREADY_SYNCED, INVALID_DATE_PREPARED_OR_REQUIRED, MISSING_LEGACY_RECORD_ID,
    MISSING_STATUS, NO_VALID_ITEMS, PENDING_STATUS_WITHOUT_CURRENT_STEP,
    PENDING_STATUS_WITHOUT_PENDING_STAGE, REQUESTER_HAS_NO_LINKED_USER,
    UNSUPPORTED_STATUS, SyncReport, UnmatchedRow, dropped_stage_reason,
    pending_stage_not_resolved_reason, stage_not_resolved_reason,
)
from .resolvers import (
    DEPARTMENT_NOT_FOUND, REQUESTER_NOT_FOUND, Resolvers, build_resolvers,
)
from .sources import LegacyRowSource
from .workflow import (
    STAGE_NAMES, PostingStatus, ProcessingStatus, RequestStatus, StageKey,
    assign_steps, build_stage_candidates, display_status, map_request_status,
    map_request_type, map_series, normalize_legacy_status, partition_stages,
    pending_stage_key, stage_approver_employee_number_path,
)

logger = logging.getLogger(__name__)

UNKNOWN_LEGACY_RECORD_ID = "UNKNOWN"
CANCELLED_REASON_DEFAULT = "Cancelled in legacy system"
DEFAULT_SUPPLIER_NAME = "Legacy Supplier"


def extract_legacy_record_id(row: LegacyRow) -> str:
    return safe_string(pick_path(row, ["id", "legacyId", "docNo", "requestNumber"])) or UNKNOWN_LEGACY_RECORD_ID


def extract_request_number(row: LegacyRow) -> str:
    doc_no = safe_string(pick_path(row, ["docNo", "requestNumber"]))
    if doc_no:
        return doc_no
    return f"LEGACY-MR-{extract_legacy_record_id(row)}"


def _override_value(value: Optional[str]) -> str:
    return (value or "").strip()


@dataclass
class _RowHints:
    """Hints carried on every unmatched entry for a row."""
    legacy_record_id: str
    request_number: str
    legacy_status: str
    mapped_status: str
    pending_step_name: Optional[str]
    pending_approver_employee_number: str
    recommending_approver_employee_number: str
    recommending_approver_name: str
    recommending_approval_status: str
    final_approver_employee_number: str
    final_approver_name: str
    final_approval_status: str
    legacy_department_code: str
    legacy_department_name: str
    department_code: str
    department_name: str

    def unmatched(self, reason: str, employee_number: str, requester_name: str) -> UnmatchedRow:
        return UnmatchedRow(
            reason=reason,
            employee_number=employee_number,
            requester_name=requester_name,
            **asdict(self),
        )


class LegacyMaterialRequestSyncJob:
    """
    Imports legacy material requests for one company.

    The job can run in two modes:
    - dry run: every row is reconstructed and classified, nothing is written
    - real:    each processed row is committed in its own transaction

    Usage:
        source = HttpLegacySource(base_url, api_token=token)
        job = LegacyMaterialRequestSyncJob(source, db, company_id, actor_user_id)
        report = await job.run()

        # Fix unmatched rows with overrides, then replay just those rows
        job = LegacyMaterialRequestSyncJob(
            source, db, company_id, actor_user_id, dry_run=False,
            target_legacy_record_ids=["1001"],
            manual_overrides=[ManualOverride(legacy_record_id="1001", ...)],
        )
    """

    def __init__(
        self,
        source: LegacyRowSource,
        db,
        company_id: str,
        actor_user_id: str,
        dry_run: bool = True,
        target_legacy_record_ids: Optional[List[str]] = None,
        manual_overrides: Optional[List[ManualOverride]] = None,
        client=None,
        unresolved_stage_policy: Optional[str] = None,
    ):
        """
        Initialize the sync job.

        Args:
            source: Where legacy rows come from
            db: Motor database holding the canonical directory and requests
            company_id: Target company; all lookups and writes are scoped to it
            actor_user_id: Fallback user for serve/posting records
            dry_run: If True, classify rows without writing anything
            target_legacy_record_ids: Replay only these legacy record ids
            manual_overrides: Per-row corrections applied before resolution
            client: Motor client used for sessions (defaults to db.client)
            unresolved_stage_policy: "drop" or "unmatched" (defaults to env config)
        """
        self.source = source
        self.db = db
        self.company_id = company_id
        self.actor_user_id = actor_user_id
        self.dry_run = dry_run
        self.target_legacy_record_ids = target_legacy_record_ids
        self.overrides = build_override_lookup(manual_overrides)
        self.unresolved_stage_policy = unresolved_stage_policy or get_unresolved_stage_policy()

        self.committer = MaterialRequestCommitter(db, client) if db is not None else None
        self.resolvers: Optional[Resolvers] = None
        self.report: Optional[SyncReport] = None

    async def run(self) -> SyncReport:
        """
        Execute the sync.

        Raises:
            ValueError: no database was given, or the stage policy is unknown
            LegacyFetchError: the legacy rows could not be fetched
        """
        if self.db is None:
            raise ValueError("db is required for legacy sync")
        if self.unresolved_stage_policy not in (STAGE_POLICY_DROP, STAGE_POLICY_UNMATCHED):
            raise ValueError(f"Unknown unresolved stage policy: {self.unresolved_stage_policy}")

        started_at = datetime.now(timezone.utc)
        report = SyncReport(
            dry_run=self.dry_run,
            source_name=self.source.get_source_name(),
            started_at=started_at.isoformat(),
        )
        self.report = report

        logger.info(
            f"Starting legacy material request sync for company {self.company_id} "
            f"({'dry run' if self.dry_run else 'real'}) from {report.source_name}"
        )

        self.resolvers = await build_resolvers(self.db, self.company_id)
        fetched_rows = await self.source.fetch_rows(self.company_id)
        rows = self._filter_targets(fetched_rows)
        report.summary.fetched.material_requests = len(rows)

        legacy_ids = [
            legacy_id for legacy_id in (extract_legacy_record_id(row) for row in rows)
            if legacy_id != UNKNOWN_LEGACY_RECORD_ID
        ]
        existing_ids = await self.committer.existing_legacy_record_ids(self.company_id, legacy_ids)
        if existing_ids:
            logger.info(f"Found {len(existing_ids)} legacy records already synced")

        for row in rows:
            legacy_record_id = extract_legacy_record_id(row)
            request_number = extract_request_number(row)
            try:
                await self._process_row(row, legacy_record_id, request_number, existing_ids)
            except Exception as e:
                report.record_error(legacy_record_id, request_number, str(e))

        report.finalize()
        completed_at = datetime.now(timezone.utc)
        report.completed_at = completed_at.isoformat()
        report.duration_seconds = (completed_at - started_at).total_seconds()

        summary = report.summary
        logger.info(
            f"Legacy sync completed: {summary.processed.material_requests} processed, "
            f"{summary.unmatched_count} unmatched, {summary.skipped_count} skipped, "
            f"{summary.error_count} errors in {report.duration_seconds:.2f}s"
        )
        return report

    def _filter_targets(self, rows: List[LegacyRow]) -> List[LegacyRow]:
        if not self.target_legacy_record_ids:
            return rows
        targets = {value.strip() for value in self.target_legacy_record_ids if value and value.strip()}
        if not targets:
            return rows
        filtered = [row for row in rows if extract_legacy_record_id(row) in targets]
        logger.info(f"Replaying {len(filtered)} of {len(rows)} legacy rows")
        return filtered

    # =========================================================================
    # PER-ROW PROCESSING
    # =========================================================================

    async def _process_row(
        self,
        row: LegacyRow,
        legacy_record_id: str,
        request_number: str,
        existing_ids: Set[str],
    ) -> None:
        report = self.report
        resolvers = self.resolvers

        if legacy_record_id == UNKNOWN_LEGACY_RECORD_ID:
            report.record_skip(MISSING_LEGACY_RECORD_ID, legacy_record_id, request_number)
            return

        if legacy_record_id in existing_ids:
            report.record_skip(ALREADY_SYNCED, legacy_record_id, request_number)
            return

        legacy_status = normalize_legacy_status(pick_path(row, ["status"]))
        if not legacy_status:
            report.record_skip(MISSING_STATUS, legacy_record_id, request_number)
            return

        override = self.overrides.get(legacy_record_id)
        hints, override_department_id = self._build_hints(row, legacy_record_id, request_number, legacy_status, override)

        stage_build = build_stage_candidates(
            row,
            legacy_status,
            resolvers.approver,
            recommending_employee_number_override=hints.recommending_approver_employee_number,
            final_employee_number_override=hints.final_approver_employee_number,
        )
        mapped_status = map_request_status(
            legacy_status, stage_build.has_final_stage, stage_build.final_approval_status
        )
        hints.mapped_status = display_status(legacy_status, mapped_status)

        # Requester
        requester_identity = extract_identity(
            row,
            employee_number_paths=["requestedByEmployeeId", "requestedBy.employeeId", "requestedBy.employeeNumber"],
            first_name_paths=["requestedByFirstName", "requestedBy.firstName"],
            last_name_paths=["requestedByLastName", "requestedBy.lastName"],
            name_paths=["requestedByName", "requestedBy.name"],
        )
        if override is not None and override.requester_employee_number:
            requester_identity.employee_number = override.requester_employee_number.strip()
        if override is not None and override.requester_name:
            requester_identity.first_name, requester_identity.last_name = split_name(override.requester_name)

        requester_match = resolvers.requester.resolve(requester_identity)
        if requester_match.matched is None:
            report.record_unmatched(hints.unmatched(
                requester_match.reason or REQUESTER_NOT_FOUND,
                requester_identity.employee_number,
                requester_identity.full_name,
            ))
            return

        requester = requester_match.matched
        if not requester.user_id:
            report.record_unmatched(hints.unmatched(
                REQUESTER_HAS_NO_LINKED_USER, requester.employee_number, requester.full_name,
            ))
            return

        # Department
        if override_department_id:
            department_match = resolvers.department.resolve_by_id(override_department_id)
        else:
            department_match = resolvers.department.resolve(hints.department_code, hints.department_name)
        department_id = department_match.matched.id if department_match.matched else requester.department_id
        if not department_id:
            report.record_unmatched(hints.unmatched(
                department_match.reason or DEPARTMENT_NOT_FOUND,
                requester.employee_number,
                requester.full_name,
            ))
            return

        # Dates
        date_prepared_source = to_date(pick_path(row, ["datePrepared", "createdAt"]))
        date_required_source = to_date(pick_path(row, ["dateRequired", "datePrepared", "createdAt"]))
        if date_prepared_source is None or date_required_source is None:
            report.record_skip(INVALID_DATE_PREPARED_OR_REQUIRED, legacy_record_id, request_number, legacy_status)
            return

        # Items
        items = normalize_items(row, legacy_status)
        report.summary.fetched.items += len(items)
        if not items:
            report.record_skip(NO_VALID_ITEMS, legacy_record_id, request_number, legacy_status)
            return

        if mapped_status is None:
            report.record_skip(UNSUPPORTED_STATUS, legacy_record_id, request_number, legacy_status)
            return

        # Stages
        pending_key = stage_build.pending_key
        pending_override = _override_value(override.pending_approver_employee_number) if override else ""
        if pending_key is not None and pending_override:
            pending_stage = stage_build.get(pending_key)
            if pending_stage is not None and not pending_stage.approver_user_id:
                pending_match = resolvers.approver.resolve(Identity(employee_number=pending_override))
                pending_stage.approver_user_id = pending_match.matched.user_id if pending_match.matched else None

        if pending_key is not None:
            hints.pending_step_name = STAGE_NAMES[pending_key]
            hints.pending_approver_employee_number = self._pending_approver_hint(row, pending_key, hints, override)

        resolved_stages, dropped_stages = partition_stages(stage_build.stages)
        if dropped_stages and self.unresolved_stage_policy == STAGE_POLICY_UNMATCHED:
            report.record_unmatched(hints.unmatched(
                stage_not_resolved_reason(dropped_stages[0].key.value),
                requester.employee_number,
                requester.full_name,
            ))
            return
        for stage in dropped_stages:
            report.record_skip(dropped_stage_reason(stage.key.value), legacy_record_id, request_number, legacy_status)

        if mapped_status == RequestStatus.PENDING_APPROVAL:
            if pending_key is None:
                report.record_skip(PENDING_STATUS_WITHOUT_PENDING_STAGE, legacy_record_id, request_number, legacy_status)
                return
            if not any(stage.key == pending_key for stage in resolved_stages):
                report.record_unmatched(hints.unmatched(
                    pending_stage_not_resolved_reason(pending_key.value),
                    requester.employee_number,
                    requester.full_name,
                ))
                return

        assignment = assign_steps(mapped_status, resolved_stages, pending_key)
        if mapped_status == RequestStatus.PENDING_APPROVAL and assignment.current_step is None:
            report.record_skip(PENDING_STATUS_WITHOUT_CURRENT_STEP, legacy_record_id, request_number, legacy_status)
            return

        # Lifecycle
        submitted_at = to_date(pick_path(row, ["createdAt"])) or date_prepared_source
        approved_at = None
        rejected_at = None
        cancelled_at = None
        if mapped_status == RequestStatus.APPROVED:
            approved_at = (
                to_date(pick_path(row, ["dateApproved"]))
                or stage_build.final_approval_date
                or stage_build.rec_approval_date
            )
        elif mapped_status == RequestStatus.REJECTED:
            rejected_at = (
                stage_build.final_approval_date
                or stage_build.rec_approval_date
                or to_date(pick_path(row, ["updatedAt"]))
            )
        elif mapped_status == RequestStatus.CANCELLED:
            cancelled_at = to_date(pick_path(row, ["updatedAt"]))

        decision_step = None
        if mapped_status == RequestStatus.REJECTED:
            decision_step = assignment.rejection_step
        elif mapped_status == RequestStatus.APPROVED:
            decision_step = assignment.last_step

        financials = compute_financials(row, items)
        fulfilment = compute_fulfilment(legacy_status, mapped_status, items)

        processing_started_at = None
        processing_completed_at = None
        if fulfilment.processing_status in (ProcessingStatus.IN_PROGRESS, ProcessingStatus.COMPLETED):
            processing_started_at = to_date(pick_path(row, ["servedAt", "processedAt", "updatedAt"]))
        if fulfilment.processing_status == ProcessingStatus.COMPLETED:
            processing_completed_at = to_date(pick_path(row, ["servedAt", "processedAt", "datePosted", "updatedAt"]))

        served_by_user_id = self._resolve_handler(row, "servedByEmployeeId", "servedByName")
        processed_by_user_id = self._resolve_handler(row, "processedByEmployeeId", "processedByName")

        posted = fulfilment.posting_status == PostingStatus.POSTED
        posted_at = to_date(pick_path(row, ["datePosted", "processedAt", "updatedAt"])) if posted else None
        posted_by_user_id = (processed_by_user_id or self.actor_user_id) if posted else None

        steps = assignment.steps
        approver_ids = [step.approver_user_id for step in steps] + [None] * 4

        request_doc: Dict[str, Any] = {
            "series": map_series(pick_path(row, ["series"])).value,
            "request_type": map_request_type(pick_path(row, ["requestType", "type"])).value,
            "status": mapped_status.value,
            "requester_employee_id": requester.id,
            "requester_user_id": requester.user_id,
            "selected_initial_approver_user_id": approver_ids[0],
            "selected_step_two_approver_user_id": approver_ids[1],
            "selected_step_three_approver_user_id": approver_ids[2],
            "selected_step_four_approver_user_id": approver_ids[3],
            "department_id": department_id,
            "date_prepared": to_utc_date_only(date_prepared_source),
            "date_required": to_utc_date_only(date_required_source),
            "charge_to": as_nullable_text(pick_path(row, ["chargeTo"])),
            "bldg_code": as_nullable_text(pick_path(row, ["bldgCode"])),
            "purpose": as_nullable_text(pick_path(row, ["purpose"])),
            "remarks": as_nullable_text(pick_path(row, ["remarks"])),
            "deliver_to": as_nullable_text(pick_path(row, ["deliverTo"])),
            "is_store_use": pick_path(row, ["isStoreUse"]) is True,
            "freight": financials.freight,
            "discount": financials.discount,
            "sub_total": financials.sub_total,
            "grand_total": financials.grand_total,
            "required_steps": assignment.required_steps,
            "current_step": assignment.current_step,
            "submitted_at": submitted_at,
            "approved_at": approved_at,
            "rejected_at": rejected_at,
            "cancelled_at": cancelled_at,
            "processing_status": fulfilment.processing_status.value if fulfilment.processing_status else None,
            "processing_started_at": processing_started_at,
            "processing_completed_at": processing_completed_at,
            "processing_remarks": as_nullable_text(pick_path(row, ["servedNotes"])),
            "processed_by_user_id": processed_by_user_id or served_by_user_id,
            "posting_status": fulfilment.posting_status.value if fulfilment.posting_status else None,
            "posting_reference": as_nullable_text(pick_path(row, ["confirmationNo", "purchaseOrderNumber"])),
            "posting_remarks": as_nullable_text(pick_path(row, ["remarks"])),
            "posted_at": posted_at,
            "posted_by_user_id": posted_by_user_id,
            "final_decision_by_user_id": decision_step.approver_user_id if decision_step else None,
            "final_decision_remarks": decision_step.remarks if decision_step else None,
            "cancellation_reason": (
                (as_nullable_text(pick_path(row, ["remarks"])) or CANCELLED_REASON_DEFAULT)
                if mapped_status == RequestStatus.CANCELLED
                else None
            ),
            "legacy_source_system": LEGACY_SOURCE_SYSTEM,
            "legacy_record_id": legacy_record_id,
            "legacy_business_unit_id": as_nullable_text(pick_path(row, ["businessUnitId"])),
        }

        serve_batch = None
        if fulfilment.should_create_serve_batch:
            serve_batch = ServeBatchPlan(
                po_number=as_nullable_text(pick_path(row, ["purchaseOrderNumber"])) or f"LEGACY-PO-{request_number}",
                supplier_name=as_nullable_text(pick_path(row, ["supplierName"])) or DEFAULT_SUPPLIER_NAME,
                notes=as_nullable_text(pick_path(row, ["servedNotes"])),
                is_final_serve=fulfilment.is_fully_served,
                served_at=to_date(pick_path(row, ["servedAt", "processedAt", "updatedAt"])) or submitted_at,
                served_by_user_id=served_by_user_id or processed_by_user_id or self.actor_user_id,
            )

        posting = None
        if posted:
            posting = PostingPlan(
                posting_reference=(
                    as_nullable_text(pick_path(row, ["confirmationNo", "purchaseOrderNumber"]))
                    or f"LEGACY-POST-{request_number}"
                ),
                remarks=as_nullable_text(pick_path(row, ["remarks"])),
                posted_at=posted_at or submitted_at,
                posted_by_user_id=posted_by_user_id,
            )

        if not self.dry_run:
            await self.committer.commit(CommitBundle(
                company_id=self.company_id,
                preferred_request_number=request_number,
                request=request_doc,
                steps=steps,
                items=items,
                serve_batch=serve_batch,
                posting=posting,
            ))

        report.record_processed(
            items=len(items),
            approval_steps=len(steps),
            serve_batch=self._creates_serve_batch(fulfilment, items),
            posting=posted,
        )
        # Later copies of the same record in this batch are already synced
        existing_ids.add(legacy_record_id)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _build_hints(
        self,
        row: LegacyRow,
        legacy_record_id: str,
        request_number: str,
        legacy_status: str,
        override: Optional[ManualOverride],
    ):
        """Collect operator hints, letting overrides replace the legacy values."""
        rec_number = _override_value(override.recommending_approver_employee_number) if override else ""
        if not rec_number:
            rec_number = safe_string(pick_path(row, ["recApproverEmployeeId"]))
        final_number = _override_value(override.final_approver_employee_number) if override else ""
        if not final_number:
            final_number = safe_string(pick_path(row, ["finalApproverEmployeeId"]))

        legacy_department_code = safe_string(pick_path(row, ["department.code", "departmentCode"]))
        legacy_department_name = safe_string(pick_path(row, ["department.name", "departmentName", "chargeTo"]))

        override_department_id = _override_value(override.department_id) if override else ""
        override_department = None
        if override_department_id:
            override_department = self.resolvers.department.resolve_by_id(override_department_id).matched

        department_code = _override_value(override.department_code) if override else ""
        if not department_code:
            department_code = override_department.code if override_department else legacy_department_code
        department_name = _override_value(override.department_name) if override else ""
        if not department_name:
            department_name = override_department.name if override_department else legacy_department_name

        hints = _RowHints(
            legacy_record_id=legacy_record_id,
            request_number=request_number,
            legacy_status=legacy_status,
            mapped_status="",
            pending_step_name=None,
            pending_approver_employee_number="",
            recommending_approver_employee_number=rec_number,
            recommending_approver_name=safe_string(pick_path(row, ["recApproverName"])),
            recommending_approval_status=safe_string(pick_path(row, ["recApprovalStatus"])),
            final_approver_employee_number=final_number,
            final_approver_name=safe_string(pick_path(row, ["finalApproverName"])),
            final_approval_status=safe_string(pick_path(row, ["finalApprovalStatus"])),
            legacy_department_code=legacy_department_code,
            legacy_department_name=legacy_department_name,
            department_code=department_code,
            department_name=department_name,
        )

        # Assume a final stage exists until the stages are built
        pending_hint = pending_stage_key(legacy_status, True)
        if pending_hint is not None:
            hints.pending_step_name = STAGE_NAMES[pending_hint]
            hints.pending_approver_employee_number = self._pending_approver_hint(row, pending_hint, hints, override)

        return hints, override_department_id

    @staticmethod
    def _pending_approver_hint(
        row: LegacyRow,
        pending_key: StageKey,
        hints: _RowHints,
        override: Optional[ManualOverride],
    ) -> str:
        override_number = _override_value(override.pending_approver_employee_number) if override else ""
        if override_number:
            return override_number
        if pending_key == StageKey.RECOMMENDING:
            return hints.recommending_approver_employee_number
        if pending_key == StageKey.FINAL:
            return hints.final_approver_employee_number
        return safe_string(pick_path(row, [stage_approver_employee_number_path(pending_key)]))

    def _resolve_handler(self, row: LegacyRow, employee_number_path: str, name_path: str) -> Optional[str]:
        """Resolve who served or processed the request; unresolved handlers are simply left empty."""
        identity = extract_identity(row, employee_number_paths=[employee_number_path], name_paths=[name_path])
        if not has_identity(identity):
            return None
        matched = self.resolvers.approver.resolve(identity).matched
        return matched.user_id if matched else None

    @staticmethod
    def _creates_serve_batch(fulfilment: Fulfilment, items: List[NormalizedItem]) -> bool:
        return fulfilment.should_create_serve_batch and any(item.is_served for item in items)
