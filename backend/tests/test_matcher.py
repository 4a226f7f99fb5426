"""
Tests for the Matcher — pairwise auto-mapping between two frameworks.

Covers:
- Confidence conversion (half-up rounding, range checks)
- Classification thresholds (equivalent / partial / dropped)
- Determinism and ordering of suggestions
- Scorer failures and timeouts are skipped, not fatal
- Framework validation and empty frameworks
- Tenant scope of the compared controls
- Result limit
- Cold SBERT model load before pair scoring
"""
import asyncio
import sys
import threading
import time
import types

import numpy as np
import pytest

from harmonizer.models.control_mapping import MappingType
from harmonizer.services.catalog import ControlCatalog
from harmonizer.services.exceptions import ScorerFailure, ValidationError
from harmonizer.services import scorers
from harmonizer.services.matcher import Matcher, classify_confidence, to_confidence
from harmonizer.services.scorers import SbertScorer


def _slow(seconds: float, value: float = 1.0):
    async def _answer():
        await asyncio.sleep(seconds)
        return value
    return _answer


# ─── Pure helpers ────────────────────────────────────────────


@pytest.mark.parametrize("score, expected", [
    (0.0, 0),
    (0.745, 75),
    (0.7449, 74),
    (0.895, 90),
    (0.93, 93),
    (1.0, 100),
    (1.0000001, 100),
])
def test_to_confidence_rounds_half_up(score, expected):
    assert to_confidence(score) == expected


@pytest.mark.parametrize("score", [-0.2, 1.5, float("nan"), "high", None])
def test_to_confidence_rejects_bad_scores(score):
    with pytest.raises(ScorerFailure):
        to_confidence(score)


def test_classify_confidence_thresholds():
    assert classify_confidence(100) == MappingType.EQUIVALENT
    assert classify_confidence(90) == MappingType.EQUIVALENT
    assert classify_confidence(89) == MappingType.PARTIAL
    assert classify_confidence(75) == MappingType.PARTIAL
    assert classify_confidence(74) is None
    assert classify_confidence(0) is None


def test_matcher_rejects_inverted_thresholds(scorer):
    with pytest.raises(ValueError):
        Matcher(None, scorer, min_confidence=95, equivalent_confidence=90)


# ─── auto_map ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_equivalent_suggestion(db, scorer, make_controls):
    iso = await make_controls("ISO 27001", [("A.5.1", "Information security policies")])
    soc = await make_controls("SOC2", [("CC1.1", "Security policy")])
    scorer.set("Information security policies", "Security policy", 0.93)

    result = await Matcher(ControlCatalog(db), scorer).auto_map("ISO 27001", "SOC2")

    assert len(result.suggestions) == 1
    s = result.suggestions[0]
    assert (s.source_id, s.target_id) == (iso[0].id, soc[0].id)
    assert s.mapping_type == MappingType.EQUIVALENT
    assert s.confidence == 93
    assert s.source_code == "A.5.1"
    assert s.target_framework == "SOC2"
    assert result.compared_pairs == 1
    assert result.skipped_pairs == 0


@pytest.mark.asyncio
async def test_low_score_yields_no_suggestion(db, scorer, make_controls):
    await make_controls("ISO 27001", [("A.5.1", "Information security policies")])
    await make_controls("SOC2", [("CC6.1", "Logical access controls")])
    scorer.set("Information security policies", "Logical access controls", 0.5)

    result = await Matcher(ControlCatalog(db), scorer).auto_map("ISO 27001", "SOC2")

    assert result.suggestions == []
    assert result.compared_pairs == 1


@pytest.mark.asyncio
async def test_partial_and_threshold_properties(db, scorer, make_controls):
    await make_controls("ISO 27001", [("A.1", "alpha"), ("A.2", "beta")])
    await make_controls("SOC2", [("S.1", "gamma"), ("S.2", "delta")])
    scorer.set("alpha", "gamma", 0.90)
    scorer.set("alpha", "delta", 0.80)
    scorer.set("beta", "gamma", 0.75)
    scorer.set("beta", "delta", 0.74)

    result = await Matcher(ControlCatalog(db), scorer).auto_map("ISO 27001", "SOC2")

    by_pair = {(s.source_code, s.target_code): s for s in result.suggestions}
    assert set(by_pair) == {("A.1", "S.1"), ("A.1", "S.2"), ("A.2", "S.1")}
    assert by_pair[("A.1", "S.1")].mapping_type == MappingType.EQUIVALENT
    assert by_pair[("A.1", "S.2")].mapping_type == MappingType.PARTIAL
    assert by_pair[("A.2", "S.1")].mapping_type == MappingType.PARTIAL
    for s in result.suggestions:
        assert s.confidence >= 75
        assert (s.mapping_type == MappingType.EQUIVALENT) == (s.confidence >= 90)
        assert s.source_framework == "ISO 27001"
        assert s.target_framework == "SOC2"


@pytest.mark.asyncio
async def test_suggestions_sorted_and_deterministic(db, scorer, make_controls):
    await make_controls("ISO 27001", [("A.2", "beta"), ("A.1", "alpha")])
    await make_controls("SOC2", [("S.2", "delta"), ("S.1", "gamma")])
    scorer.set("alpha", "gamma", 0.80)
    scorer.set("alpha", "delta", 0.95)
    scorer.set("beta", "gamma", 0.80)
    scorer.set("beta", "delta", 0.80)

    matcher = Matcher(ControlCatalog(db), scorer, max_workers=1)
    first = await matcher.auto_map("ISO 27001", "SOC2")
    second = await Matcher(ControlCatalog(db), scorer, max_workers=4).auto_map("ISO 27001", "SOC2")

    assert first.suggestions == second.suggestions
    assert [(s.source_code, s.target_code, s.confidence) for s in first.suggestions] == [
        ("A.1", "S.2", 95),
        ("A.1", "S.1", 80),
        ("A.2", "S.1", 80),
        ("A.2", "S.2", 80),
    ]


@pytest.mark.asyncio
async def test_scorer_failure_is_skipped(db, scorer, make_controls):
    await make_controls("ISO 27001", [("A.1", "alpha"), ("A.2", "beta")])
    await make_controls("SOC2", [("S.1", "gamma")])
    scorer.set("alpha", "gamma", RuntimeError("model crashed"))
    scorer.set("beta", "gamma", 0.91)

    result = await Matcher(ControlCatalog(db), scorer).auto_map("ISO 27001", "SOC2")

    assert [(s.source_code, s.target_code) for s in result.suggestions] == [("A.2", "S.1")]
    assert result.skipped_pairs == 1
    assert result.timed_out_pairs == 0
    assert not result.scorer_unavailable
    assert any("could not be scored" in w for w in result.warnings)


@pytest.mark.asyncio
async def test_out_of_range_score_is_skipped(db, scorer, make_controls):
    await make_controls("ISO 27001", [("A.1", "alpha")])
    await make_controls("SOC2", [("S.1", "gamma")])
    scorer.set("alpha", "gamma", 1.7)

    result = await Matcher(ControlCatalog(db), scorer).auto_map("ISO 27001", "SOC2")

    assert result.suggestions == []
    assert result.skipped_pairs == 1
    assert result.scorer_unavailable


@pytest.mark.asyncio
async def test_slow_pair_times_out(db, scorer, make_controls):
    await make_controls("ISO 27001", [("A.1", "alpha"), ("A.2", "beta")])
    await make_controls("SOC2", [("S.1", "gamma")])
    scorer.set("alpha", "gamma", _slow(2.0))
    scorer.set("beta", "gamma", 0.88)

    result = await Matcher(ControlCatalog(db), scorer, timeout=0.05).auto_map("ISO 27001", "SOC2")

    assert [(s.source_code, s.confidence) for s in result.suggestions] == [("A.2", 88)]
    assert result.skipped_pairs == 1
    assert result.timed_out_pairs == 1


@pytest.mark.asyncio
async def test_empty_framework_returns_empty(db, scorer, make_controls):
    await make_controls("ISO 27001", [("A.1", "alpha")])
    await make_controls("SOC2", [("S.1", "gamma")], client_id=7)

    # SOC2 exists, but only for tenant 7
    result = await Matcher(ControlCatalog(db), scorer).auto_map("ISO 27001", "SOC2")

    assert result.suggestions == []
    assert result.target_count == 0
    assert scorer.calls == []


@pytest.mark.asyncio
async def test_unknown_framework_rejected(db, scorer, make_controls):
    await make_controls("ISO 27001", [("A.1", "alpha")])
    matcher = Matcher(ControlCatalog(db), scorer)

    with pytest.raises(ValidationError):
        await matcher.auto_map("ISO 27001", "NOPE")
    with pytest.raises(ValidationError):
        await matcher.auto_map("ISO 27001", "ISO 27001")
    with pytest.raises(ValidationError):
        await matcher.auto_map("", "ISO 27001")


@pytest.mark.asyncio
async def test_tenant_controls_are_compared(db, scorer, make_controls):
    await make_controls("ISO 27001", [("A.1", "alpha")])
    await make_controls("SOC2", [("S.1", "gamma")])
    await make_controls("SOC2", [("T.1", "tenant gamma")], client_id=3)
    await make_controls("SOC2", [("U.1", "other tenant gamma")], client_id=4)
    scorer.default = 0.95

    result = await Matcher(ControlCatalog(db), scorer).auto_map("ISO 27001", "SOC2", client_id=3)

    assert sorted(s.target_code for s in result.suggestions) == ["S.1", "T.1"]
    assert result.target_count == 2


@pytest.mark.asyncio
async def test_result_limit_truncates(db, scorer, make_controls):
    await make_controls("ISO 27001", [(f"A.{i}", f"source {i}") for i in range(3)])
    await make_controls("SOC2", [(f"S.{i}", f"target {i}") for i in range(3)])
    scorer.default = 0.8

    result = await Matcher(ControlCatalog(db), scorer, result_limit=4).auto_map("ISO 27001", "SOC2")

    assert len(result.suggestions) == 4
    assert result.truncated
    assert any("top 4 of 9" in w for w in result.warnings)


# ─── Scorer warm-up ──────────────────────────────────────────


class _SlowSentenceTransformer:
    """Stand-in model whose construction takes longer than one pair's timeout."""

    loads = 0
    _lock = threading.Lock()

    def __init__(self, model_name):
        with self._lock:
            type(self).loads += 1
        time.sleep(0.5)

    def encode(self, texts, **kwargs):
        return np.array([[1.0, float(len(t) % 5)] for t in texts], dtype=float)


@pytest.fixture
def slow_sbert(monkeypatch):
    _SlowSentenceTransformer.loads = 0
    module = types.ModuleType("sentence_transformers")
    module.SentenceTransformer = _SlowSentenceTransformer
    monkeypatch.setitem(sys.modules, "sentence_transformers", module)
    monkeypatch.setattr(scorers, "_models", {})
    return _SlowSentenceTransformer


@pytest.mark.asyncio
async def test_cold_model_load_is_outside_pair_timeout(db, make_controls, slow_sbert):
    await make_controls("ISO 27001", [(f"A.{i}", f"source control {i}") for i in range(4)])
    await make_controls("SOC2", [(f"S.{i}", f"target control {i}") for i in range(4)])

    matcher = Matcher(ControlCatalog(db), SbertScorer("slow-model"), timeout=0.3, max_workers=8)
    result = await matcher.auto_map("ISO 27001", "SOC2")

    assert result.compared_pairs == 16
    assert result.timed_out_pairs == 0
    assert result.skipped_pairs == 0
    assert not result.scorer_unavailable
    assert slow_sbert.loads == 1


@pytest.mark.asyncio
async def test_model_is_loaded_once_across_scorers(slow_sbert):
    first, second = SbertScorer("slow-model"), SbertScorer("slow-model")

    await asyncio.gather(first.prepare(["policy"]), second.prepare(["backup"]))

    assert slow_sbert.loads == 1
