"""
Legacy Material Request Sync - Items & Financials

Normalizes legacy line items into canonical quantity/price/served records and
recomputes request totals and fulfilment sub-statuses from them.
"""

from dataclasses import dataclass
from typing import List, Optional

from .config import QUANTITY_TOLERANCE
from .fields import (
    LegacyRow, as_nullable_text, pick_path, round_currency, round_quantity,
    safe_number, safe_string,
)
from .workflow import (
    LEGACY_FULLY_SERVED_STATUSES, LEGACY_POSTED_STATUSES,
    PostingStatus, ProcessingStatus, RequestStatus,
)


@dataclass
class NormalizedItem:
    line_number: int
    legacy_item_id: Optional[str]
    item_code: Optional[str]
    description: str
    uom: str
    quantity: float
    unit_price: Optional[float]
    line_total: Optional[float]
    remarks: Optional[str]
    quantity_served: float

    @property
    def is_served(self) -> bool:
        return self.quantity_served > QUANTITY_TOLERANCE

    @property
    def is_fully_served(self) -> bool:
        return self.quantity - self.quantity_served <= QUANTITY_TOLERANCE


def normalize_items(row: LegacyRow, legacy_status: str) -> List[NormalizedItem]:
    """
    Convert the row's legacy items.

    Items missing a description, a unit of measure or a positive quantity are
    dropped. Line numbers are assigned to surviving items starting at 1.
    """
    raw_items = pick_path(row, ["items"])
    if not isinstance(raw_items, list):
        return []

    fully_served_status = legacy_status in LEGACY_FULLY_SERVED_STATUSES
    items: List[NormalizedItem] = []

    for raw_item in raw_items:
        if not isinstance(raw_item, dict):
            continue

        description = safe_string(pick_path(raw_item, ["description"]))
        uom = safe_string(pick_path(raw_item, ["uom"]))
        quantity_raw = safe_number(pick_path(raw_item, ["quantity"]))
        if not description or not uom or quantity_raw is None or quantity_raw <= 0:
            continue

        quantity = round_quantity(quantity_raw)

        unit_price_raw = safe_number(pick_path(raw_item, ["unitPrice"]))
        unit_price = None if unit_price_raw is None else round_currency(unit_price_raw)

        line_total_raw = safe_number(pick_path(raw_item, ["lineTotal", "totalPrice"]))
        if line_total_raw is not None:
            line_total: Optional[float] = round_currency(line_total_raw)
        elif unit_price is not None:
            line_total = round_currency(quantity * unit_price)
        else:
            line_total = None

        served_raw = safe_number(pick_path(raw_item, ["quantityServed"])) or 0.0
        if fully_served_status and served_raw <= 0:
            served = quantity
        else:
            served = max(0.0, min(quantity, served_raw))

        items.append(NormalizedItem(
            line_number=len(items) + 1,
            legacy_item_id=as_nullable_text(pick_path(raw_item, ["id"])),
            item_code=as_nullable_text(pick_path(raw_item, ["itemCode"])),
            description=description,
            uom=uom,
            quantity=quantity,
            unit_price=unit_price,
            line_total=line_total,
            remarks=as_nullable_text(pick_path(raw_item, ["remarks"])),
            quantity_served=round_quantity(served),
        ))

    return items


@dataclass
class Financials:
    freight: float
    discount: float
    sub_total: float
    grand_total: float


def compute_financials(row: LegacyRow, items: List[NormalizedItem]) -> Financials:
    """
    Subtotal is always recomputed from the items. The legacy total wins for the
    grand total when present, otherwise subtotal + freight - discount.
    """
    freight = round_currency(safe_number(pick_path(row, ["freight"])) or 0.0)
    discount = round_currency(safe_number(pick_path(row, ["discount"])) or 0.0)
    sub_total = round_currency(sum(item.line_total or 0.0 for item in items))

    provided_total = safe_number(pick_path(row, ["total"]))
    if provided_total is None:
        grand_total = round_currency(sub_total + freight - discount)
    else:
        grand_total = round_currency(provided_total)

    return Financials(freight=freight, discount=discount, sub_total=sub_total, grand_total=grand_total)


@dataclass
class Fulfilment:
    has_any_served: bool
    is_fully_served: bool
    should_create_serve_batch: bool
    processing_status: Optional[ProcessingStatus]
    posting_status: Optional[PostingStatus]


def compute_fulfilment(
    legacy_status: str,
    mapped_status: RequestStatus,
    items: List[NormalizedItem],
) -> Fulfilment:
    has_any_served = any(item.is_served for item in items)
    is_fully_served = all(item.is_fully_served for item in items)
    fully_served_status = legacy_status in LEGACY_FULLY_SERVED_STATUSES

    processing_status: Optional[ProcessingStatus] = None
    posting_status: Optional[PostingStatus] = None

    if mapped_status == RequestStatus.APPROVED:
        if is_fully_served or fully_served_status:
            processing_status = ProcessingStatus.COMPLETED
        elif has_any_served:
            processing_status = ProcessingStatus.IN_PROGRESS
        else:
            processing_status = ProcessingStatus.PENDING_PURCHASER

        if legacy_status in LEGACY_POSTED_STATUSES:
            posting_status = PostingStatus.POSTED
        elif processing_status == ProcessingStatus.COMPLETED or legacy_status == "FOR_POSTING":
            posting_status = PostingStatus.PENDING_POSTING

    return Fulfilment(
        has_any_served=has_any_served,
        is_fully_served=is_fully_served,
        should_create_serve_batch=has_any_served or fully_served_status,
        processing_status=processing_status,
        posting_status=posting_status,
    )
