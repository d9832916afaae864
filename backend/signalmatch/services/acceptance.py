"""Acceptance policy for fallback attribution candidates."""

from dataclasses import dataclass
from typing import Optional

from signalmatch.services.attribution_types import AttributionCandidate


@dataclass(frozen=True)
class AcceptancePolicy:
    """Confidence floors a fallback match must clear before it is written.

    The floors are empirical defaults; see Settings.ACCEPT_* to tune them.
    """

    click_id_floor: float = 0.20
    fbc_floor: float = 0.22
    weak_signal_floor: float = 0.28
    global_floor: float = 0.25

    @classmethod
    def from_settings(cls, settings) -> "AcceptancePolicy":
        return cls(
            click_id_floor=settings.ACCEPT_CLICK_ID_FLOOR,
            fbc_floor=settings.ACCEPT_FBC_FLOOR,
            weak_signal_floor=settings.ACCEPT_WEAK_SIGNAL_FLOOR,
            global_floor=settings.ACCEPT_GLOBAL_FLOOR,
        )

    def accepts(self, candidate: Optional[AttributionCandidate]) -> bool:
        if candidate is None or not candidate.entity_ids.is_mapped:
            return False

        matched = set(candidate.matched_signals)
        confidence = candidate.confidence

        if "click_id" in matched and confidence >= self.click_id_floor:
            return True
        if "fbc" in matched and confidence >= self.fbc_floor:
            return True
        if ("fbp" in matched or "email_hash" in matched) and confidence >= self.weak_signal_floor:
            return True
        return confidence >= self.global_floor
