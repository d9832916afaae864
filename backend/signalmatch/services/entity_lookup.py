"""Entity name lookup: UTM names -> entity ids, entity ids -> display names.

WHAT:
    - Builds per-store name maps (campaign / adset / ad) from
      `entity_name_snapshots`
    - Resolves utm_campaign / utm_medium / utm_content values to ids with a
      tolerant fuzzy match
    - Provides id -> name maps for dashboard labelling

WHY:
    Many storefronts only pass UTM *names* (e.g. "Spring Sale - Broad").
    Matching those against the ads account's entity names recovers the ids.
    Name lookups are optional: any failure degrades to "no names" and
    callers fall back to raw ids.

MATCHING:
    normalize  percent-decode, '+' -> space, lower-case,
               non [a-z0-9] runs -> single space
    exact      normalized key equality wins outright
    substring  0.9 + (shorter / longer) * 0.09
    tokens     common / max(token counts), +0.05 if first tokens match,
               capped at 0.89
    threshold  best score >= 0.86; an equal-score tie between different ids
               is ambiguous and resolves to nothing
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Optional
from urllib.parse import unquote

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from signalmatch.models import EntityLevelEnum, EntityNameSnapshot
from signalmatch.services.attribution_types import EntityIds
from signalmatch.services.cache import NameCache, NullNameCache, names_key

logger = logging.getLogger(__name__)


MATCH_THRESHOLD = 0.86
_TIE_EPSILON = 1e-6
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

LEVELS = tuple(level.value for level in EntityLevelEnum)

# Which UTM parameter names which entity level
UTM_LEVELS = (
    ("utm_campaign", EntityLevelEnum.campaign.value),
    ("utm_medium", EntityLevelEnum.adset.value),
    ("utm_content", EntityLevelEnum.ad.value),
)


# =============================================================================
# PURE MATCHING
# =============================================================================

def normalize_lookup_key(raw: Optional[str]) -> str:
    if not raw:
        return ""
    value = raw.strip()
    if not value:
        return ""
    try:
        value = unquote(value, errors="strict")
    except UnicodeDecodeError:
        pass
    value = value.replace("+", " ").lower()
    return " ".join(_NON_ALNUM.sub(" ", value).split())


def score_lookup_match(target: str, candidate: str) -> float:
    if target == candidate:
        return 1.0

    if target in candidate or candidate in target:
        shorter = min(len(target), len(candidate))
        longer = max(len(target), len(candidate)) or 1
        return 0.9 + (shorter / longer) * 0.09

    target_tokens = set(target.split())
    candidate_tokens = set(candidate.split())
    if not target_tokens or not candidate_tokens:
        return 0.0

    common = len(target_tokens & candidate_tokens)
    if common == 0:
        return 0.0

    overlap = common / max(len(target_tokens), len(candidate_tokens))
    target_first = target.split()[0]
    candidate_first = candidate.split()[0]
    prefix_bonus = 0.05 if target_first == candidate_first else 0.0
    return min(0.89, overlap + prefix_bonus)


def find_lookup_id(name_to_id: Dict[str, str], raw: Optional[str]) -> Optional[str]:
    """Resolve a raw UTM value against a normalized name -> id map."""
    target = normalize_lookup_key(raw)
    if not target:
        return None

    exact = name_to_id.get(target)
    if exact:
        return exact

    best_id: Optional[str] = None
    best_score = 0.0
    ambiguous = False

    for candidate_key, candidate_id in name_to_id.items():
        score = score_lookup_match(target, candidate_key)
        if score < MATCH_THRESHOLD:
            continue
        if score > best_score:
            best_score = score
            best_id = candidate_id
            ambiguous = False
            continue
        if abs(score - best_score) < _TIE_EPSILON and best_id and candidate_id != best_id:
            ambiguous = True

    if not best_id or ambiguous:
        return None
    return best_id


# =============================================================================
# NAME MAPS
# =============================================================================

@dataclass
class NameMaps:
    """Per-level name maps for one store."""

    by_name: Dict[str, Dict[str, str]] = field(default_factory=lambda: {level: {} for level in LEVELS})
    by_id: Dict[str, Dict[str, str]] = field(default_factory=lambda: {level: {} for level in LEVELS})

    def add(self, level: str, entity_id: Optional[str], name: Optional[str]) -> None:
        entity_id = (entity_id or "").strip()
        name = (name or "").strip()
        if level not in self.by_id or not entity_id or not name:
            return
        self.by_id[level].setdefault(entity_id, name)
        key = normalize_lookup_key(name)
        if key:
            self.by_name[level].setdefault(key, entity_id)

    @property
    def is_empty(self) -> bool:
        return not any(self.by_id[level] for level in LEVELS)


class EntityNameLookup:
    """Store-scoped name resolution backed by snapshot rows and a TTL cache.

    Usage:
        lookup = EntityNameLookup(db, cache)
        ids = lookup.resolve_entity_ids_from_utms(store_id, utm_campaign="spring sale", ...)
        names = lookup.names_for(store_id, "campaign")
    """

    def __init__(self, db: Session, cache: Optional[NameCache] = None):
        self.db = db
        self.cache = cache or NullNameCache()

    def _load_maps(self, store_id: str) -> NameMaps:
        maps = NameMaps()
        rows = (
            self.db.query(EntityNameSnapshot)
            .filter(EntityNameSnapshot.store_id == store_id)
            .order_by(EntityNameSnapshot.captured_at.desc())
            .all()
        )
        for row in rows:
            maps.add(row.level, row.entity_id, row.name)
        return maps

    def get_maps(self, store_id: str) -> NameMaps:
        """Name maps for the store; empty maps when the lookup fails."""
        try:
            return self.cache.get_or_load(names_key(store_id), lambda: self._load_maps(store_id))
        except SQLAlchemyError as e:
            logger.warning(
                f"[ENTITY_LOOKUP] Name lookup failed for store {store_id}, using raw ids: {e}",
                extra={"store_id": store_id},
            )
            return NameMaps()

    def names_for(self, store_id: str, level: str) -> Dict[str, str]:
        return self.get_maps(store_id).by_id.get(level, {})

    def resolve_entity_ids_from_utms(
        self,
        store_id: str,
        current: EntityIds,
        utm_campaign: Optional[str] = None,
        utm_medium: Optional[str] = None,
        utm_content: Optional[str] = None,
    ) -> EntityIds:
        """Fill missing ids from UTM names. Ids already present are kept."""
        utms = {
            "utm_campaign": utm_campaign,
            "utm_medium": utm_medium,
            "utm_content": utm_content,
        }
        if not any(utms.values()):
            return current
        if current.campaign_id and current.adset_id and current.ad_id:
            return current

        maps = self.get_maps(store_id)
        if maps.is_empty:
            return current

        resolved = {}
        for utm_name, level in UTM_LEVELS:
            resolved[level] = find_lookup_id(maps.by_name[level], utms[utm_name])

        return current.fill_missing(
            EntityIds(
                campaign_id=resolved[EntityLevelEnum.campaign.value],
                adset_id=resolved[EntityLevelEnum.adset.value],
                ad_id=resolved[EntityLevelEnum.ad.value],
            )
        )
