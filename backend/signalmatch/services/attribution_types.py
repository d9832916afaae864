"""Shared value types for the attribution resolution engine."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class EntityIds:
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None

    @property
    def is_mapped(self) -> bool:
        return bool(self.campaign_id or self.adset_id or self.ad_id)

    @property
    def triple_key(self) -> str:
        return f"{self.campaign_id or ''}|{self.adset_id or ''}|{self.ad_id or ''}"

    def fill_missing(self, other: "EntityIds") -> "EntityIds":
        """Keep our ids, take `other`'s only where ours are empty."""
        return EntityIds(
            campaign_id=self.campaign_id or other.campaign_id,
            adset_id=self.adset_id or other.adset_id,
            ad_id=self.ad_id or other.ad_id,
        )

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "campaign_id": self.campaign_id,
            "adset_id": self.adset_id,
            "ad_id": self.ad_id,
        }

    @classmethod
    def from_row(cls, row: Any) -> "EntityIds":
        return cls(
            campaign_id=getattr(row, "campaign_id", None),
            adset_id=getattr(row, "adset_id", None),
            ad_id=getattr(row, "ad_id", None),
        )


@dataclass
class AttributionCandidate:
    """Output of a fallback matching strategy (not persisted as a row).

    `matched_at` is the candidate event's occurred_at; `score` is the raw
    strategy score before it is mapped onto `confidence`.
    """

    entity_ids: EntityIds
    confidence: float
    score: float
    matched_signals: List[str]
    matched_at: datetime
    source: str
    age_hours: Optional[float]
    strategy: str
    matched_event_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def campaign_id(self) -> Optional[str]:
        return self.entity_ids.campaign_id

    @property
    def adset_id(self) -> Optional[str]:
        return self.entity_ids.adset_id

    @property
    def ad_id(self) -> Optional[str]:
        return self.entity_ids.ad_id

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe form stored under payload_json.fallbackAttribution."""
        return {
            "confidence": round(self.confidence, 4),
            "score": round(self.score, 4),
            "matchedSignals": list(self.matched_signals),
            "matchedAt": self.matched_at.isoformat() if self.matched_at else None,
            "source": self.source,
            "ageHours": round(self.age_hours, 4) if self.age_hours is not None else None,
            "strategy": self.strategy,
        }
