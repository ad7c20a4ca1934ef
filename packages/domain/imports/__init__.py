"""
Imports Module - bank statement import pipeline

Three-stage process:
1. Deduplication (checksum): skip rows already stored for the account
2. Entity Matching (rules): alias → exact → prefix → contains → stripped retry
3. AI Categorization (Claude): fallback for rows the rules cannot resolve

Cache strategy:
- First time seeing a description → AI call (~$0.0002 with Haiku)
- Same description again → cache hit (free)

Example flow:
- "WOOLWORTHS 1234 SYDNEY" → prefix match → Woolworths (matched)
- "SQ *BEAN THERE CAFE" → no rule → AI → "Bean There Cafe" / Dining (uncertain)
- Same statement uploaded twice → every row skipped on the second pass
"""

from packages.common.errors import AiCategorizationError
from packages.domain.imports.ai_categorizer import (
    AiCacheEntry,
    AiCategorizer,
    AiUsageRecord,
    CategorizationOutcome,
)
from packages.domain.imports.checksum import compute_checksum, deduplicate
from packages.domain.imports.entity_matcher import MatchResult, match_entity
from packages.domain.imports.import_service import ImportService
from packages.domain.imports.progress_store import ProgressStore
from packages.domain.imports.record_store import RecordStore

__all__ = [
    'AiCacheEntry',
    'AiCategorizationError',
    'AiCategorizer',
    'AiUsageRecord',
    'CategorizationOutcome',
    'ImportService',
    'MatchResult',
    'ProgressStore',
    'RecordStore',
    'compute_checksum',
    'deduplicate',
    'match_entity',
]
