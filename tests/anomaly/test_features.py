"""
Tests for feature extraction and baseline keys.
"""

import math
from datetime import UTC, datetime

import pytest

from src.anomaly.features import (
    baseline_key,
    extract_features,
    extract_primary_value,
    is_valid_features,
    is_valid_value,
)
from src.anomaly.types import BehaviorData, ErrorData, LogData, MetricData, TraceData

NOW = datetime(2025, 10, 2, 12, 0, tzinfo=UTC)


def metric(value, **kwargs):
    return MetricData(timestamp=NOW, source=kwargs.pop("source", "api"), value=value, **kwargs)


class TestExtractFeatures:
    """Tests for type-specific feature vectors."""

    @pytest.mark.parametrize(
        "data,expected",
        [
            (metric(12.5), [12.5]),
            (LogData(timestamp=NOW, source="api", level="error", message="disk full"), [4.0, 9.0]),
            (
                TraceData(
                    timestamp=NOW,
                    source="api",
                    trace_id="t",
                    span_id="s",
                    operation="GET /",
                    duration=250.0,
                    status="timeout",
                ),
                [250.0, 3.0],
            ),
            (
                ErrorData(
                    timestamp=NOW,
                    source="api",
                    error_type="TypeError",
                    message="x",
                    severity="critical",
                    stack_trace="abc",
                ),
                [4.0, 3.0],
            ),
            (
                BehaviorData(
                    timestamp=NOW,
                    source="web",
                    session_id="s",
                    action="click",
                    page="/",
                    success=False,
                    duration=80.0,
                ),
                [80.0, 0.0],
            ),
        ],
    )
    def test_feature_vectors(self, data, expected):
        """Test the feature vector of each variant."""
        assert extract_features(data) == expected

    def test_unknown_log_level(self):
        """Test that unknown enumerations map to zero."""
        data = LogData(timestamp=NOW, source="api", level="verbose", message="")

        assert extract_primary_value(data) == 0.0

    def test_behavior_without_duration(self):
        """Test that a missing behavior duration counts as zero."""
        data = BehaviorData(timestamp=NOW, source="web", session_id="s", action="a", page="/", success=True)

        assert extract_primary_value(data) == 0.0
        assert extract_features(data) == [0.0, 1.0]


class TestValidation:
    """Tests for value validation."""

    @pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
    def test_non_finite_values(self, value):
        """Test that non-finite values are invalid."""
        assert not is_valid_value(value)
        assert not is_valid_features([1.0, value])

    def test_finite_values(self):
        """Test that finite values are valid."""
        assert is_valid_value(0)
        assert is_valid_features([1.0, 2.0])
        assert not is_valid_features([])


class TestBaselineKey:
    """Tests for baseline key derivation."""

    def test_key_without_tags(self):
        """Test the key of an untagged point."""
        assert baseline_key(metric(1.0, source="api")) == "metric:api"

    def test_relevant_tags_sorted(self):
        """Test that relevant tags are included in sorted order."""
        data = metric(1.0, tags={"region": "eu", "service": "checkout", "version": "1.2"})

        assert baseline_key(data) == "metric:api:region:eu,service:checkout"

    def test_tag_order_irrelevant(self):
        """Test that two points with the same tags share a key."""
        first = metric(1.0, tags={"service": "a", "endpoint": "/x"})
        second = metric(2.0, tags={"endpoint": "/x", "service": "a"})

        assert baseline_key(first) == baseline_key(second)

    def test_missing_source(self):
        """Test that an empty source falls back to unknown."""
        assert baseline_key(metric(1.0, source="")) == "metric:unknown"
