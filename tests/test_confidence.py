"""
Tests for the confidence policy
"""
import pytest

from job_timeline.confidence import confidence_level, decide, needs_review
from job_timeline.models import DecisionAction


class TestDecide:
    """Tests for decide()"""

    def test_confident_negative_is_discarded(self):
        assert decide(0.85, False).action == DecisionAction.DISCARD

    def test_negative_at_threshold_is_kept_for_review(self):
        decision = decide(0.8, False)
        assert decision.action == DecisionAction.REVIEW
        assert decision.retention_days == 7

    def test_uncertain_job_goes_to_review(self):
        decision = decide(0.55, True)
        assert decision.action == DecisionAction.REVIEW
        assert decision.retention_days == 14

    def test_job_above_storage_floor_is_stored(self):
        assert decide(0.65, True).action == DecisionAction.JOB

    def test_negative_in_middle_band_goes_to_review(self):
        decision = decide(0.65, False)
        assert decision.action == DecisionAction.REVIEW
        assert decision.retention_days == 14

    @pytest.mark.parametrize("is_job", [True, False])
    def test_very_low_confidence_kept_longest(self, is_job):
        decision = decide(0.2, is_job)
        assert decision.action == DecisionAction.REVIEW
        assert decision.retention_days == 30

    def test_high_confidence_job(self):
        decision = decide(0.95, True)
        assert decision.action == DecisionAction.JOB
        assert decision.retention_days is None


class TestHelpers:
    """Tests for display helpers"""

    def test_confidence_level_bands(self):
        assert confidence_level(0.1) == "very_low"
        assert confidence_level(0.4) == "low"
        assert confidence_level(0.6) == "medium"
        assert confidence_level(0.8) == "high"
        assert confidence_level(0.95) == "very_high"

    def test_needs_review(self):
        assert needs_review(0.69)
        assert not needs_review(0.7)
