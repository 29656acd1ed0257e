"""
Legacy Sync - API Routes

Admin endpoints for importing legacy material requests:
- Sync trigger (dry run or real), with replay targets and manual overrides
- Sanitized configuration inspection
"""

import logging
import uuid
from typing import List, Optional

from fastapi import APIRouter, Header, HTTPException
from pydantic import BaseModel, Field, HttpUrl, field_validator

from services.legacy_sync import HttpLegacySource, LegacyFetchError, LegacyMaterialRequestSyncJob, ManualOverride
from services.legacy_sync.config import (
    LEGACY_SOURCE_SYSTEM, LEGACY_SYNC_DEFAULT_ENDPOINT, LEGACY_SYNC_DEFAULT_TIMEOUT_MS,
    LEGACY_SYNC_MAX_ROWS_PER_SECTION, LEGACY_SYNC_MAX_TIMEOUT_MS, LEGACY_SYNC_MIN_TIMEOUT_MS,
    MAX_MANUAL_OVERRIDES, MAX_TARGET_LEGACY_RECORD_IDS, get_unresolved_stage_policy,
    is_legacy_sync_enabled,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/legacy-sync", tags=["Legacy Sync"])

# Database reference (set during app startup)
db = None


def set_db(database):
    """Set database reference for legacy sync routes."""
    global db
    db = database


# =============================================================================
# MODELS
# =============================================================================

class LegacySyncRequest(BaseModel):
    """Request model for a legacy material request sync."""
    company_id: str
    base_url: HttpUrl
    legacy_scope_id: Optional[str] = None
    api_token: Optional[str] = None
    material_request_endpoint: str = LEGACY_SYNC_DEFAULT_ENDPOINT
    timeout_ms: int = Field(
        default=LEGACY_SYNC_DEFAULT_TIMEOUT_MS,
        ge=LEGACY_SYNC_MIN_TIMEOUT_MS,
        le=LEGACY_SYNC_MAX_TIMEOUT_MS,
    )
    dry_run: bool = True
    target_legacy_record_ids: List[str] = Field(default_factory=list, max_length=MAX_TARGET_LEGACY_RECORD_IDS)
    manual_overrides: List[ManualOverride] = Field(default_factory=list, max_length=MAX_MANUAL_OVERRIDES)

    @field_validator("company_id")
    @classmethod
    def _validate_company_id(cls, value: str) -> str:
        try:
            uuid.UUID(value.strip())
        except ValueError:
            raise ValueError("Company is invalid.")
        return value.strip()

    @field_validator("material_request_endpoint")
    @classmethod
    def _validate_endpoint(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith("/"):
            raise ValueError("Endpoint must start with '/'.")
        return value

    @field_validator("legacy_scope_id", "api_token")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("target_legacy_record_ids")
    @classmethod
    def _clean_target_ids(cls, values: List[str]) -> List[str]:
        return [value.strip() for value in values if value and value.strip()]


# =============================================================================
# SYNC ENDPOINTS
# =============================================================================

@router.post("/material-requests")
async def sync_material_requests(
    request: LegacySyncRequest,
    x_user_id: Optional[str] = Header(default=None),
):
    """
    Import legacy material requests for a company.

    Runs as a dry run unless `dry_run` is false. Each result list is
    truncated; the summary always carries the full counts.
    """
    if not is_legacy_sync_enabled():
        raise HTTPException(status_code=503, detail="Legacy sync is disabled")
    if db is None:
        raise HTTPException(status_code=500, detail="Database not initialized")
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")

    source = HttpLegacySource(
        base_url=str(request.base_url),
        endpoint=request.material_request_endpoint,
        legacy_scope_id=request.legacy_scope_id,
        api_token=request.api_token,
        timeout_ms=request.timeout_ms,
    )
    job = LegacyMaterialRequestSyncJob(
        source=source,
        db=db,
        company_id=request.company_id,
        actor_user_id=x_user_id.strip(),
        dry_run=request.dry_run,
        target_legacy_record_ids=request.target_legacy_record_ids,
        manual_overrides=request.manual_overrides,
    )

    try:
        report = await job.run()
    except LegacyFetchError as e:
        logger.error(f"Legacy sync failed for company {request.company_id}: {e}")
        return {
            "ok": False,
            "message": f"Legacy sync failed: {e}",
            "dry_run": request.dry_run,
            "summary": None,
            "unmatched": [],
            "skipped": [],
            "errors": [],
        }

    result = report.to_dict(limit=LEGACY_SYNC_MAX_ROWS_PER_SECTION)
    return {
        "ok": True,
        "message": (
            "Dry run completed. No material requests were written."
            if request.dry_run
            else "Legacy material request sync completed."
        ),
        "dry_run": request.dry_run,
        "summary": result["summary"],
        "unmatched": result["unmatched"],
        "skipped": result["skipped"],
        "errors": result["errors"],
    }


# =============================================================================
# CONFIGURATION ENDPOINTS
# =============================================================================

@router.get("/config")
async def get_legacy_sync_config():
    """
    Get legacy sync configuration (sanitized - no secrets).
    """
    return {
        "enabled": is_legacy_sync_enabled(),
        "source_system": LEGACY_SOURCE_SYSTEM,
        "default_endpoint": LEGACY_SYNC_DEFAULT_ENDPOINT,
        "default_timeout_ms": LEGACY_SYNC_DEFAULT_TIMEOUT_MS,
        "min_timeout_ms": LEGACY_SYNC_MIN_TIMEOUT_MS,
        "max_timeout_ms": LEGACY_SYNC_MAX_TIMEOUT_MS,
        "max_target_legacy_record_ids": MAX_TARGET_LEGACY_RECORD_IDS,
        "max_manual_overrides": MAX_MANUAL_OVERRIDES,
        "max_rows_per_section": LEGACY_SYNC_MAX_ROWS_PER_SECTION,
        "unresolved_stage_policy": get_unresolved_stage_policy(),
    }
