"""
Tests for chord_app/harmony/collaborators.py: optional bass / quality plug-ins.

Fake collaborators are plain classes; they never see real audio.
"""

from __future__ import annotations

import logging

import numpy as np
import pytest

from chord_app.harmony.chords import MAJOR, MINOR
from chord_app.harmony.collaborators import (
    BassDetail,
    BassDetailDetector,
    QualityRefiner,
    QualitySuggestion,
    apply_bass_details,
    apply_quality_suggestions,
    run_bass_detector,
    run_quality_refiner,
)

AUDIO = np.zeros(100, dtype=np.float32)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FixedBass:
    def __init__(self, details):
        self.details = details
        self.calls = 0

    def detect_bass(self, audio, timeline, key, options):
        self.calls += 1
        return self.details


class FixedRefiner:
    def __init__(self, suggestions):
        self.suggestions = suggestions

    def refine(self, audio, timeline, options):
        return self.suggestions


class Exploding:
    def detect_bass(self, audio, timeline, key, options):
        raise RuntimeError("model not loaded")

    def refine(self, audio, timeline, options):
        raise RuntimeError("model not loaded")


class Unreadable:
    """Returns a lazy result that fails partway through iteration."""

    def detect_bass(self, audio, timeline, key, options):
        return self._results()

    def refine(self, audio, timeline, options):
        return self._results()

    @staticmethod
    def _results():
        yield None
        raise ValueError("malformed")


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class TestProtocols:
    def test_fakes_satisfy_protocols(self) -> None:
        assert isinstance(FixedBass([]), BassDetailDetector)
        assert isinstance(FixedRefiner([]), QualityRefiner)
        assert not isinstance(object(), QualityRefiner)


# ---------------------------------------------------------------------------
# Bass details
# ---------------------------------------------------------------------------


class TestApplyBassDetails:
    def test_fifth_in_bass_becomes_inversion(self, timeline_factory) -> None:
        tl = timeline_factory([(0, MAJOR, 1.0), (5, MAJOR, 1.0)])
        out = apply_bass_details(tl, [BassDetail(7, 0.9), None])
        assert [e.label for e in out] == ["C/G", "F"]

    def test_thirds_follow_quality(self, timeline_factory) -> None:
        tl = timeline_factory([(9, MINOR, 1.0), (7, MAJOR, 1.0)])
        out = apply_bass_details(tl, [BassDetail(0, 0.9), BassDetail(11, 0.9)])
        assert [e.label for e in out] == ["Am/C", "G/B"]

    def test_sevenths(self, timeline_factory) -> None:
        tl = timeline_factory([(7, MAJOR, 1.0), (0, MAJOR, 1.0)])
        out = apply_bass_details(tl, [BassDetail(5, 0.9), BassDetail(11, 0.9)])
        assert [e.label for e in out] == ["G7", "Cmaj7"]

    def test_low_confidence_ignored(self, timeline_factory) -> None:
        tl = timeline_factory([(0, MAJOR, 1.0)])
        assert apply_bass_details(tl, [BassDetail(7, 0.1)]) == tl

    def test_extensions_disabled(self, timeline_factory) -> None:
        tl = timeline_factory([(7, MAJOR, 1.0)])
        out = apply_bass_details(tl, [BassDetail(5, 0.9)], allow_extensions=False)
        assert out[0].label == "G"

    def test_unrelated_bass_ignored(self, timeline_factory) -> None:
        tl = timeline_factory([(0, MAJOR, 1.0)])
        assert apply_bass_details(tl, [BassDetail(1, 0.9)])[0].label == "C"

    def test_timing_root_quality_preserved(self, timeline_factory) -> None:
        tl = timeline_factory([(0, MAJOR, 1.5), (7, MAJOR, 2.0)])
        out = apply_bass_details(tl, [BassDetail(4, 0.9), BassDetail(5, 0.9)])
        for a, b in zip(tl, out):
            assert (a.start, a.end, a.root, a.quality) == (b.start, b.end, b.root, b.quality)

    def test_mapping_and_camel_case(self, timeline_factory) -> None:
        tl = timeline_factory([(0, MAJOR, 1.0), (5, MAJOR, 1.0)])
        out = apply_bass_details(
            tl,
            [{"bass_pc": 7, "confidence": 0.9}, {"bassPitchClass": 0, "bassConfidence": 0.9}],
        )
        assert [e.label for e in out] == ["C/G", "F/C"]

    @pytest.mark.parametrize(
        "bad",
        [
            {"bass_pc": 42, "confidence": 0.9},
            {"bass_pc": "x", "confidence": 0.9},
            {"bass_pc": 7, "confidence": float("nan")},
            "C/G",
            7,
        ],
    )
    def test_malformed_items_skipped(self, timeline_factory, bad) -> None:
        tl = timeline_factory([(0, MAJOR, 1.0)])
        assert apply_bass_details(tl, [bad]) == tl

    def test_length_mismatch_padded(self, timeline_factory, caplog) -> None:
        tl = timeline_factory([(0, MAJOR, 1.0), (5, MAJOR, 1.0)])
        with caplog.at_level(logging.WARNING):
            out = apply_bass_details(tl, [BassDetail(7, 0.9)])
        assert [e.label for e in out] == ["C/G", "F"]
        assert "returned 1 results for 2 chords" in caplog.text


# ---------------------------------------------------------------------------
# Quality suggestions
# ---------------------------------------------------------------------------


class TestApplyQualitySuggestions:
    def test_override(self, timeline_factory, c_major_key) -> None:
        tl = timeline_factory([(0, MAJOR, 1.0), (9, MAJOR, 1.0)])
        out = apply_quality_suggestions(tl, [None, QualitySuggestion("minor", 0.8, True)], key=c_major_key)
        assert out[1].label == "Am"
        assert out[1].source == "refiner"
        assert out[1].diatonic is True

    def test_requires_should_override(self, timeline_factory) -> None:
        tl = timeline_factory([(9, MAJOR, 1.0)])
        assert apply_quality_suggestions(tl, [QualitySuggestion("minor", 0.9, False)]) == tl

    def test_low_confidence(self, timeline_factory) -> None:
        tl = timeline_factory([(9, MAJOR, 1.0)])
        assert apply_quality_suggestions(tl, [QualitySuggestion("minor", 0.2, True)]) == tl

    def test_never_duplicates_neighbour(self, timeline_factory) -> None:
        tl = timeline_factory([(9, MINOR, 1.0), (9, MAJOR, 1.0)])
        out = apply_quality_suggestions(tl, [None, QualitySuggestion("min", 0.9, True)])
        assert [e.label for e in out] == ["Am", "A"]

    def test_chord_label_with_matching_root(self, timeline_factory) -> None:
        tl = timeline_factory([(4, MAJOR, 1.0)])
        out = apply_quality_suggestions(tl, [{"suggestedQualityLabel": "Em", "confidence": 0.9, "shouldOverride": True}])
        assert out[0].label == "Em"

    def test_chord_label_with_other_root_ignored(self, timeline_factory) -> None:
        tl = timeline_factory([(4, MAJOR, 1.0)])
        out = apply_quality_suggestions(tl, [{"label": "Am", "confidence": 0.9, "should_override": True}])
        assert out == tl

    def test_garbage_ignored(self, timeline_factory) -> None:
        tl = timeline_factory([(4, MAJOR, 1.0)])
        assert apply_quality_suggestions(tl, [{"label": 3, "confidence": "high"}]) == tl
        assert apply_quality_suggestions(tl, None) == tl

    def test_nan_confidence_ignored(self, timeline_factory) -> None:
        tl = timeline_factory([(0, MAJOR, 1.0)])
        out = apply_quality_suggestions(
            tl, [{"label": "minor", "confidence": float("nan"), "should_override": True}], 0.4
        )
        assert out == tl
        assert out[0].quality == MAJOR

    def test_single_letter_words_are_case_sensitive(self, timeline_factory) -> None:
        tl = timeline_factory([(0, MINOR, 1.0), (9, MAJOR, 1.0)])
        out = apply_quality_suggestions(
            tl, [QualitySuggestion("M", 0.9, True), QualitySuggestion("m", 0.9, True)]
        )
        assert [e.label for e in out] == ["C", "Am"]


# ---------------------------------------------------------------------------
# Runners
# ---------------------------------------------------------------------------


class TestRunners:
    def test_detector_failure_is_isolated(self, timeline_factory, c_major_key, caplog) -> None:
        tl = timeline_factory([(0, MAJOR, 1.0)])
        with caplog.at_level(logging.WARNING):
            assert run_bass_detector(Exploding(), AUDIO, tl, c_major_key, {}) == tl
            assert run_quality_refiner(Exploding(), AUDIO, tl, c_major_key, {}) == tl
        assert "model not loaded" in caplog.text

    def test_results_failing_during_iteration_are_isolated(self, timeline_factory, c_major_key, caplog) -> None:
        tl = timeline_factory([(0, MAJOR, 1.0), (7, MAJOR, 1.0)])
        with caplog.at_level(logging.WARNING):
            assert run_bass_detector(Unreadable(), AUDIO, tl, c_major_key, {}) == tl
            assert run_quality_refiner(Unreadable(), AUDIO, tl, c_major_key, {}) == tl
        assert "malformed" in caplog.text

    def test_absent_collaborators(self, timeline_factory, c_major_key) -> None:
        tl = timeline_factory([(0, MAJOR, 1.0)])
        assert run_bass_detector(None, AUDIO, tl, c_major_key, {}) == tl
        assert run_quality_refiner(None, AUDIO, tl, c_major_key, {}) == tl

    def test_empty_timeline_skips_call(self, c_major_key) -> None:
        det = FixedBass([])
        assert run_bass_detector(det, AUDIO, [], c_major_key, {}) == []
        assert det.calls == 0

    def test_basic_mode_blocks_sevenths(self, timeline_factory, c_major_key) -> None:
        tl = timeline_factory([(7, MAJOR, 1.0)])
        det = FixedBass([BassDetail(5, 0.9)])
        assert run_bass_detector(det, AUDIO, tl, c_major_key, {"harmony_mode": "basic"})[0].label == "G"
        assert run_bass_detector(det, AUDIO, tl, c_major_key, {"harmony_mode": "jazz"})[0].label == "G7"

    def test_sensitivity_lowers_extension_floor(self, timeline_factory, c_major_key) -> None:
        tl = timeline_factory([(7, MAJOR, 1.0)])
        det = FixedBass([BassDetail(5, 0.5)])
        opts = {"min_bass_confidence": 0.3, "extension_sensitivity": 0.5}
        assert run_bass_detector(det, AUDIO, tl, c_major_key, opts)[0].label == "G"
        opts["extension_sensitivity"] = 2.0
        assert run_bass_detector(det, AUDIO, tl, c_major_key, opts)[0].label == "G7"

    def test_refiner_options(self, timeline_factory, c_major_key) -> None:
        tl = timeline_factory([(9, MAJOR, 1.0)])
        ref = FixedRefiner([QualitySuggestion("minor", 0.5, True)])
        assert run_quality_refiner(ref, AUDIO, tl, c_major_key, {"min_quality_confidence": 0.6}) == tl
        assert run_quality_refiner(ref, AUDIO, tl, c_major_key, {})[0].label == "Am"
