"""
Entity Matcher - deterministic payee resolution

Resolves a free-text statement description to a known entity. Stages run in
strict priority order and the first hit wins:

1. Alias   - alias key appears in the description → aliased entity
2. Exact   - description equals an entity name
3. Prefix  - description starts with an entity name (longest name wins)
4. Contains - entity name appears anywhere (min length, longest name wins)
5. Stripped - apostrophes/backticks removed from both sides, stages 2-4 rerun

All comparisons are case-insensitive. No match returns None and the caller
falls back to AI categorization.

Example:
- "WOOLIES METRO 123" + alias WOOLIES→Woolworths → Woolworths (alias)
- "COLES EXPRESS 123" with Coles and Coles Express → Coles Express (prefix)
- "MCDONALDS SYDNEY" with McDonald's → McDonald's (prefix, stripped retry)
"""
import re
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from packages.domain.imports.schemas import MatchType

DEFAULT_MIN_CONTAINS_LENGTH = 4

_PUNCTUATION = re.compile(r"['`‘’]")


@dataclass(frozen=True)
class MatchResult:
    entity_name: str
    entity_id: str
    match_type: MatchType


def normalize(text: str) -> str:
    return text.upper().strip()


def strip_punctuation(text: str) -> str:
    return _PUNCTUATION.sub("", text)


def find_in_lookup(
    entity_name: str, entity_lookup: Mapping[str, str]
) -> Optional[Tuple[str, str]]:
    """Case-insensitive lookup of an entity name; returns (canonical name, id)"""
    target = normalize(entity_name)
    for name, entity_id in entity_lookup.items():
        if normalize(name) == target:
            return name, entity_id
    return None


def _match_names(
    normalized: str,
    entity_lookup: Mapping[str, str],
    min_contains_length: int,
    stripped: bool,
) -> Optional[MatchResult]:
    # (original name, comparable form, id); names that normalize to "" would
    # prefix/contain every description
    candidates = []
    for name, entity_id in entity_lookup.items():
        comparable = normalize(strip_punctuation(name) if stripped else name)
        if comparable:
            candidates.append((name, comparable, entity_id))

    for name, comparable, entity_id in candidates:
        if normalized == comparable:
            return MatchResult(name, entity_id, MatchType.EXACT)

    best: Optional[MatchResult] = None
    for name, comparable, entity_id in candidates:
        if normalized.startswith(comparable):
            if best is None or len(name) > len(best.entity_name):
                best = MatchResult(name, entity_id, MatchType.PREFIX)
    if best:
        return best

    for name, comparable, entity_id in candidates:
        if len(name) < min_contains_length:
            continue
        if comparable in normalized:
            if best is None or len(name) > len(best.entity_name):
                best = MatchResult(name, entity_id, MatchType.CONTAINS)
    return best


def match_entity(
    description: str,
    entity_lookup: Mapping[str, str],
    aliases: Optional[Mapping[str, str]] = None,
    min_contains_length: int = DEFAULT_MIN_CONTAINS_LENGTH,
) -> Optional[MatchResult]:
    """
    Resolve a description to a known entity.

    Args:
        description: Raw statement description
        entity_lookup: Entity name → entity id
        aliases: Alias substring → canonical entity name
        min_contains_length: Shortest entity name considered by the contains stage

    Returns:
        MatchResult or None when no stage matches
    """
    normalized = normalize(description)

    # An alias whose target is missing from the lookup falls through to the
    # name stages with the original description.
    for alias, entity_name in (aliases or {}).items():
        if normalize(alias) and normalize(alias) in normalized:
            found = find_in_lookup(entity_name, entity_lookup)
            if found:
                return MatchResult(*found, MatchType.ALIAS)
            break

    result = _match_names(normalized, entity_lookup, min_contains_length, stripped=False)
    if result:
        return result

    return _match_names(
        strip_punctuation(normalized), entity_lookup, min_contains_length, stripped=True
    )
