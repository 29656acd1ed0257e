"""
Legacy Material Request Sync - Transactional Committer

Writes one reconstructed legacy row as a single unit of work:
- material_requests               (the canonical request)
- material_request_steps          (approval steps)
- material_request_items          (line items)
- material_request_serve_batches  (only when some item was served)
- material_request_postings       (only when the legacy row was posted)

Requests are create-once: provenance (source tag, legacy record id) is checked
in bulk before any row is processed, and a unique index backs the check.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from .config import LEGACY_SOURCE_SYSTEM, MAX_REQUEST_NUMBER_ATTEMPTS
from .errors import RequestNumberExhaustedError
from .items import NormalizedItem
from .workflow import ApprovalStepPlan

logger = logging.getLogger(__name__)


@dataclass
class ServeBatchPlan:
    po_number: str
    supplier_name: str
    notes: Optional[str]
    is_final_serve: bool
    served_at: Optional[datetime]
    served_by_user_id: str


@dataclass
class PostingPlan:
    posting_reference: str
    remarks: Optional[str]
    posted_at: Optional[datetime]
    posted_by_user_id: str


@dataclass
class CommitBundle:
    """Everything needed to create one canonical request."""
    company_id: str
    preferred_request_number: str
    request: Dict[str, Any]
    steps: List[ApprovalStepPlan] = field(default_factory=list)
    items: List[NormalizedItem] = field(default_factory=list)
    serve_batch: Optional[ServeBatchPlan] = None
    posting: Optional[PostingPlan] = None


@dataclass
class CommitResult:
    request_id: str
    request_number: str
    serve_batch_created: bool = False
    posting_created: bool = False


async def ensure_indexes(db) -> None:
    """Create the indexes the committer relies on for uniqueness."""
    await db.material_requests.create_index("id", unique=True)
    await db.material_requests.create_index(
        [("company_id", 1), ("request_number", 1)], unique=True
    )
    await db.material_requests.create_index(
        [("company_id", 1), ("legacy_source_system", 1), ("legacy_record_id", 1)],
        unique=True,
        partialFilterExpression={"legacy_record_id": {"$type": "string"}},
    )
    await db.material_request_steps.create_index([("material_request_id", 1), ("step_number", 1)], unique=True)
    await db.material_request_items.create_index([("material_request_id", 1), ("line_number", 1)], unique=True)
    await db.material_request_serve_batches.create_index("material_request_id")
    await db.material_request_postings.create_index("material_request_id")
    logger.info("Legacy sync indexes created")


class MaterialRequestCommitter:
    """
    Persists reconstructed requests to MongoDB.

    Usage:
        committer = MaterialRequestCommitter(db)
        existing = await committer.existing_legacy_record_ids(company_id, ids)
        result = await committer.commit(bundle)
    """

    def __init__(self, db, client=None):
        self.db = db
        self.client = client if client is not None else db.client

    async def existing_legacy_record_ids(self, company_id: str, legacy_record_ids: Iterable[str]) -> Set[str]:
        """Return which of the given legacy record ids were already imported for the company."""
        ids = [legacy_id for legacy_id in dict.fromkeys(legacy_record_ids) if legacy_id]
        if not ids:
            return set()

        cursor = self.db.material_requests.find(
            {
                "company_id": company_id,
                "legacy_source_system": LEGACY_SOURCE_SYSTEM,
                "legacy_record_id": {"$in": ids},
            },
            {"legacy_record_id": 1, "_id": 0},
        )

        existing = set()
        async for doc in cursor:
            if doc.get("legacy_record_id"):
                existing.add(doc["legacy_record_id"])
        return existing

    async def unique_request_number(self, company_id: str, preferred_request_number: str) -> str:
        """
        Find a free request number: the preferred number verbatim, then
        `<preferred>-01` through `<preferred>-99`.
        """
        base = preferred_request_number.strip() or "LEGACY-MR"

        for suffix in range(MAX_REQUEST_NUMBER_ATTEMPTS):
            candidate = base if suffix == 0 else f"{base}-{suffix:02d}"
            existing = await self.db.material_requests.find_one(
                {"company_id": company_id, "request_number": candidate},
                {"_id": 0, "id": 1},
            )
            if existing is None:
                if suffix > 0:
                    logger.info(f"Request number {base} taken, using {candidate}")
                return candidate

        raise RequestNumberExhaustedError(
            f"Unable to generate unique request number for {preferred_request_number}"
        )

    async def commit(self, bundle: CommitBundle) -> CommitResult:
        """Create the request and all of its children in one transaction."""
        request_number = await self.unique_request_number(bundle.company_id, bundle.preferred_request_number)
        request_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)

        request_doc = {
            **bundle.request,
            "id": request_id,
            "company_id": bundle.company_id,
            "request_number": request_number,
            "created_at": now,
            "updated_at": now,
        }
        step_docs = [self._step_doc(request_id, step) for step in bundle.steps]
        item_docs = [self._item_doc(request_id, item) for item in bundle.items]
        item_id_by_line = {doc["line_number"]: doc["id"] for doc in item_docs}

        serve_batch_doc = None
        if bundle.serve_batch is not None:
            serve_batch_doc = self._serve_batch_doc(request_id, bundle.serve_batch, bundle.items, item_id_by_line)

        posting_doc = None
        if bundle.posting is not None:
            posting_doc = {
                "id": str(uuid.uuid4()),
                "material_request_id": request_id,
                "posting_reference": bundle.posting.posting_reference,
                "remarks": bundle.posting.remarks,
                "posted_at": bundle.posting.posted_at,
                "posted_by_user_id": bundle.posting.posted_by_user_id,
                "created_at": now,
            }

        async with await self.client.start_session() as session:
            async with session.start_transaction():
                await self.db.material_requests.insert_one(request_doc, session=session)
                if step_docs:
                    await self.db.material_request_steps.insert_many(step_docs, session=session)
                if item_docs:
                    await self.db.material_request_items.insert_many(item_docs, session=session)
                if serve_batch_doc is not None:
                    await self.db.material_request_serve_batches.insert_one(serve_batch_doc, session=session)
                if posting_doc is not None:
                    await self.db.material_request_postings.insert_one(posting_doc, session=session)

        logger.debug(f"Committed material request {request_number} ({request_id})")

        return CommitResult(
            request_id=request_id,
            request_number=request_number,
            serve_batch_created=serve_batch_doc is not None,
            posting_created=posting_doc is not None,
        )

    @staticmethod
    def _step_doc(request_id: str, step: ApprovalStepPlan) -> Dict[str, Any]:
        return {
            "id": str(uuid.uuid4()),
            "material_request_id": request_id,
            "step_number": step.step_number,
            "step_name": step.step_name,
            "approver_user_id": step.approver_user_id,
            "status": step.status.value,
            "acted_at": step.acted_at,
            "acted_by_user_id": step.acted_by_user_id,
            "remarks": step.remarks,
        }

    @staticmethod
    def _item_doc(request_id: str, item: NormalizedItem) -> Dict[str, Any]:
        return {
            "id": str(uuid.uuid4()),
            "material_request_id": request_id,
            "line_number": item.line_number,
            "source": "MANUAL",
            "legacy_item_id": item.legacy_item_id,
            "item_code": item.item_code,
            "description": item.description,
            "uom": item.uom,
            "quantity": item.quantity,
            "unit_price": item.unit_price,
            "line_total": item.line_total,
            "remarks": item.remarks,
            "quantity_served": item.quantity_served,
        }

    @staticmethod
    def _serve_batch_doc(
        request_id: str,
        plan: ServeBatchPlan,
        items: List[NormalizedItem],
        item_id_by_line: Dict[int, str],
    ) -> Optional[Dict[str, Any]]:
        batch_items = [
            {
                "material_request_item_id": item_id_by_line[item.line_number],
                "quantity_served": item.quantity_served,
            }
            for item in items
            if item.is_served and item.line_number in item_id_by_line
        ]
        if not batch_items:
            return None

        return {
            "id": str(uuid.uuid4()),
            "material_request_id": request_id,
            "po_number": plan.po_number,
            "supplier_name": plan.supplier_name,
            "notes": plan.notes,
            "is_final_serve": plan.is_final_serve,
            "served_at": plan.served_at,
            "served_by_user_id": plan.served_by_user_id,
            "items": batch_items,
        }
