"""
Legacy Material Request Sync Module

Imports material requests from the legacy system into the canonical
multi-step approval model, idempotently and one transaction per request.

Components:
- LegacyRowSource: Abstract interface for legacy row sources
- HttpLegacySource: Reads rows from the legacy migration API
- InMemorySource: In-memory implementation for testing
- LegacyMaterialRequestSyncJob: Runs a sync (dry run or real)
- MaterialRequestCommitter: Transactional writes and provenance lookups
- ManualOverride: Operator corrections for unmatched rows
- SyncReport: Summary plus unmatched, skipped and error rows
"""

from .committer import MaterialRequestCommitter, ensure_indexes
from .errors import LegacyFetchError, LegacySyncError, RequestNumberExhaustedError
from .job import LegacyMaterialRequestSyncJob
from .overrides import ManualOverride
from .report import SyncReport
from .sources import HttpLegacySource, InMemorySource, LegacyRowSource

__all__ = [
    'LegacyRowSource',
    'HttpLegacySource',
    'InMemorySource',
    'LegacyMaterialRequestSyncJob',
    'MaterialRequestCommitter',
    'ensure_indexes',
    'ManualOverride',
    'SyncReport',
    'LegacySyncError',
    'LegacyFetchError',
    'RequestNumberExhaustedError',
]
