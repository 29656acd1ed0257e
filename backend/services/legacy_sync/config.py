"""
Legacy Material Request Sync - Configuration

All settings are read from environment variables. Secrets (legacy API tokens)
are never stored here; they are supplied per run by the caller.
"""

import os


# =============================================================================
# FEATURE FLAG
# =============================================================================

def is_legacy_sync_enabled() -> bool:
    """Check if the legacy material request sync is enabled via feature flag."""
    return os.environ.get("LEGACY_SYNC_ENABLED", "true").lower() in ("true", "1", "yes")


# =============================================================================
# CONSTANTS
# =============================================================================

# Provenance tag stored on every imported request (idempotency key component)
LEGACY_SOURCE_SYSTEM = "LEGACY_MATERIAL_REQUESTS_V1"

# Served-quantity comparisons allow this much rounding noise
QUANTITY_TOLERANCE = 0.0005

# Preferred number plus suffixes -01 .. -99
MAX_REQUEST_NUMBER_ATTEMPTS = 100

LEGACY_SYNC_DEFAULT_ENDPOINT = os.environ.get(
    "LEGACY_SYNC_DEFAULT_ENDPOINT", "/api/migration/material-requests"
)
LEGACY_SYNC_DEFAULT_TIMEOUT_MS = int(os.environ.get("LEGACY_SYNC_DEFAULT_TIMEOUT_MS", "30000"))
LEGACY_SYNC_MIN_TIMEOUT_MS = 5000
LEGACY_SYNC_MAX_TIMEOUT_MS = 120000

# Limits applied to a single sync request
MAX_TARGET_LEGACY_RECORD_IDS = 2000
MAX_MANUAL_OVERRIDES = 2000

# Result lists returned over HTTP are truncated to this many entries
LEGACY_SYNC_MAX_ROWS_PER_SECTION = int(os.environ.get("LEGACY_SYNC_MAX_ROWS_PER_SECTION", "200"))


# =============================================================================
# UNRESOLVED STAGE POLICY
# =============================================================================

STAGE_POLICY_DROP = "drop"
STAGE_POLICY_UNMATCHED = "unmatched"


def get_unresolved_stage_policy() -> str:
    """
    How a present stage with an unresolvable approver is handled.

    - drop: the stage is removed from the step sequence and the row continues
    - unmatched: the whole row is reported as unmatched
    """
    policy = os.environ.get("LEGACY_SYNC_UNRESOLVED_STAGE_POLICY", STAGE_POLICY_DROP).strip().lower()
    if policy not in (STAGE_POLICY_DROP, STAGE_POLICY_UNMATCHED):
        return STAGE_POLICY_DROP
    return policy
