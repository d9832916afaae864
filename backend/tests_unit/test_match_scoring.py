"""
Match Scoring Tests (Unit)
==========================

WHAT: Signal-match scoring, time-proximity selection and the acceptance floors.
WHY: These constants decide which ad gets credit for an order; regressions are silent.

REFERENCES:
- backend/signalmatch/services/signal_scorer.py
- backend/signalmatch/services/time_proximity.py
- backend/signalmatch/services/acceptance.py
"""

import os
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

os.environ["TOKEN_ENCRYPTION_KEY"] = "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA="

from signalmatch.services.acceptance import AcceptancePolicy
from signalmatch.services.attribution_types import AttributionCandidate, EntityIds
from signalmatch.services.signal_scorer import (
    confidence_from_score,
    rank_candidates,
    recency_multiplier,
    score_signal_match,
)
from signalmatch.services.time_proximity import (
    clamp_window_minutes,
    confidence_for_distance,
    distance_seconds,
    pick_nearest,
)


NOW = datetime(2025, 6, 1, 12, 0, 0)


def _row(event_id="e", occurred_at=NOW, source="browser", **fields):
    values = dict(campaign_id=None, adset_id=None, ad_id=None, click_id=None, fbc=None, fbp=None, email_hash=None)
    values.update(fields)
    return SimpleNamespace(event_id=event_id, occurred_at=occurred_at, source=source, **values)


def _candidate(confidence, signals, campaign_id="c-1"):
    return AttributionCandidate(
        entity_ids=EntityIds(campaign_id=campaign_id),
        confidence=confidence,
        score=confidence * 120,
        matched_signals=list(signals),
        matched_at=NOW,
        source="browser",
        age_hours=1.0,
        strategy="signal_match",
    )


# =============================================================================
# SIGNAL SCORING
# =============================================================================

def test_recency_steps() -> None:
    assert recency_multiplier(1.0) == 1.0
    assert recency_multiplier(1.01) == 0.97
    assert recency_multiplier(24) == 0.90
    assert recency_multiplier(168) == 0.55
    assert recency_multiplier(500) == 0.35


def test_click_and_fbc_combo_with_breadth_bonus() -> None:
    # (72 + 58 + 18 + 6) * 0.97
    assert score_signal_match(["click_id", "fbc"], 2.0, "browser") == pytest.approx(149.38)


def test_weak_single_signal_penalties() -> None:
    assert score_signal_match(["email_hash"], 130.0, "browser") == pytest.approx(12 * 0.55 * 0.35)
    assert score_signal_match(["fbp"], 50.0, "browser") == pytest.approx(24 * 0.75 * 0.6)
    assert score_signal_match(["fbp"], 40.0, "browser") == pytest.approx(24 * 0.75)


def test_shopify_candidates_are_dampened() -> None:
    assert score_signal_match(["click_id"], None, "shopify") == pytest.approx(72 * 0.72)


def test_confidence_is_clamped() -> None:
    assert confidence_from_score(0.0) == 0.05
    assert confidence_from_score(72.0) == pytest.approx(0.6)
    assert confidence_from_score(500.0) == 0.98


def test_rank_candidates_prefers_higher_score_then_later_row() -> None:
    current = {"click_id": "abc", "fbp": "fbp-1"}
    rows = [
        _row("fbp-only", occurred_at=NOW - timedelta(minutes=10), fbp="fbp-1", campaign_id="c-fbp"),
        _row("click-early", occurred_at=NOW - timedelta(minutes=40), click_id="abc", campaign_id="c-1"),
        _row("click-late", occurred_at=NOW - timedelta(minutes=20), click_id="abc", campaign_id="c-2"),
        _row("unmapped", occurred_at=NOW - timedelta(minutes=5), click_id="abc", fbp="fbp-1"),
    ]

    best = rank_candidates(current, rows, before=NOW)

    assert best.matched_event_id == "click-late"
    assert best.matched_signals == ["click_id"]


# =============================================================================
# TIME PROXIMITY
# =============================================================================

def test_window_clamp() -> None:
    assert clamp_window_minutes(None) == 10
    assert clamp_window_minutes("abc") == 10
    assert clamp_window_minutes(1) == 2
    assert clamp_window_minutes(5.9) == 5
    assert clamp_window_minutes(120) == 60


def test_distance_rounds_halves_up() -> None:
    assert distance_seconds(NOW, NOW - timedelta(seconds=59.5)) == 60
    assert distance_seconds(NOW, NOW + timedelta(seconds=10)) == 10


def test_confidence_tiers() -> None:
    assert confidence_for_distance(60) == 0.76
    assert confidence_for_distance(61) == 0.72
    assert confidence_for_distance(900) == 0.53
    assert confidence_for_distance(901) == 0.42


def test_pick_nearest_accepts_distant_rival() -> None:
    rows = [
        _row("near", occurred_at=NOW - timedelta(seconds=30), campaign_id="c-1"),
        _row("far", occurred_at=NOW - timedelta(seconds=200), campaign_id="c-2"),
    ]

    candidate = pick_nearest(NOW, rows, ambiguity_seconds=120, signal_types=["fbp"])

    assert candidate.matched_event_id == "near"
    assert candidate.confidence == 0.76
    assert candidate.score == 76.0
    assert candidate.matched_signals == ["fbp"]
    assert candidate.extra == {"diffSeconds": 30}


def test_pick_nearest_rejects_close_rival_with_other_triple() -> None:
    rows = [
        _row("a", occurred_at=NOW - timedelta(seconds=30), campaign_id="c-1"),
        _row("b", occurred_at=NOW + timedelta(seconds=100), campaign_id="c-2"),
    ]
    assert pick_nearest(NOW, rows, ambiguity_seconds=120) is None


def test_pick_nearest_ignores_unmapped_rows() -> None:
    assert pick_nearest(NOW, [_row("x", occurred_at=NOW)]) is None


# =============================================================================
# ACCEPTANCE
# =============================================================================

def test_click_id_floor_boundary() -> None:
    policy = AcceptancePolicy()
    assert policy.accepts(_candidate(0.20, ["click_id"])) is True
    assert policy.accepts(_candidate(0.199, ["click_id"])) is False


def test_fbc_and_weak_signal_floors() -> None:
    policy = AcceptancePolicy()
    assert policy.accepts(_candidate(0.22, ["fbc"])) is True
    assert policy.accepts(_candidate(0.24, ["fbp"])) is False
    assert policy.accepts(_candidate(0.28, ["email_hash"])) is True


def test_global_floor_applies_without_signals() -> None:
    policy = AcceptancePolicy()
    assert policy.accepts(_candidate(0.42, [])) is True
    assert policy.accepts(_candidate(0.24, [])) is False


def test_unmapped_or_missing_candidate_is_rejected() -> None:
    policy = AcceptancePolicy()
    assert policy.accepts(None) is False
    assert policy.accepts(_candidate(0.9, ["click_id"], campaign_id=None)) is False


def test_floors_follow_settings() -> None:
    settings = SimpleNamespace(
        ACCEPT_CLICK_ID_FLOOR=0.5,
        ACCEPT_FBC_FLOOR=0.5,
        ACCEPT_WEAK_SIGNAL_FLOOR=0.5,
        ACCEPT_GLOBAL_FLOOR=0.5,
    )
    assert AcceptancePolicy.from_settings(settings).accepts(_candidate(0.3, ["click_id"])) is False
