"""
Human-readable explanations for detected anomalies.

The explainer inspects a flagged data point from several angles (deviation
from its baseline, seasonal expectations, agreement between models,
variant-specific signals and contextual tags) and turns the strongest of
those factors into a templated reason plus a short list of suggestions.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import UTC
from typing import Any

import structlog

from .errors import NotInitializedError
from .features import extract_primary_value, log_level_code, severity_code
from .types import (
    AnomalyExplanation,
    AnomalyScore,
    BaselineData,
    BehaviorData,
    DataType,
    ErrorData,
    ExplanationFactor,
    LogData,
    MetricData,
    MonitoringData,
    SeasonalPeriod,
    Severity,
    TraceData,
)

logger = structlog.get_logger(__name__)

MAX_FACTORS = 5
MAX_SUGGESTIONS = 5
MIN_FACTOR_IMPACT = 0.1

STATISTICAL_DEVIATION = "Statistical Deviation"
TEMPORAL_PATTERN = "Temporal Pattern"
MODEL_CONSENSUS = "Model Consensus"
RAPID_CHANGE = "Rapid Change"
HIGH_SEVERITY_LOG = "High Severity Log"
HIGH_LATENCY = "High Latency"
FAILED_OPERATION = "Failed Operation"
ERROR_SEVERITY = "Error Severity"
FAILED_USER_ACTION = "Failed User Action"
CONTEXT_INDICATORS = "Context Indicators"

PROBLEM_MARKERS = ("error", "timeout", "failure", "critical", "alert")
DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

HIGH_LATENCY_MS = 5000.0

EXPLANATION_TEMPLATES = {
    "generic_default": "{severity} anomaly ({score}/100, {confidence}% confidence): {factor}",
    "metric_statistical_deviation": "Metric shows {severity} statistical deviation ({score}/100): {factor}",
    "log_high_severity_log": "{severity} severity log anomaly detected ({score}/100): {factor}",
    "trace_high_latency": "Performance anomaly detected ({score}/100): {factor}",
    "error_error_severity": "Error anomaly detected ({score}/100): {factor}",
    "behavior_failed_user_action": "User behavior anomaly ({score}/100): {factor}",
}

# Relative importance, used to rank factors of equal impact
FACTOR_WEIGHTS = {
    STATISTICAL_DEVIATION: 1.0,
    MODEL_CONSENSUS: 0.9,
    HIGH_SEVERITY_LOG: 0.9,
    TEMPORAL_PATTERN: 0.8,
    FAILED_OPERATION: 0.8,
    ERROR_SEVERITY: 0.8,
    HIGH_LATENCY: 0.7,
    RAPID_CHANGE: 0.7,
    FAILED_USER_ACTION: 0.7,
    CONTEXT_INDICATORS: 0.6,
}

FACTOR_SUGGESTIONS = {
    STATISTICAL_DEVIATION: "Compare with historical data to identify pattern changes",
    TEMPORAL_PATTERN: "Check for scheduled operations or unusual load patterns",
    HIGH_LATENCY: "Investigate database and network performance",
    FAILED_OPERATION: "Check error logs and system dependencies",
    HIGH_SEVERITY_LOG: "Review application logs for error details",
}

TYPE_SUGGESTIONS = {
    DataType.METRIC: "Monitor related metrics for cascading effects",
    DataType.ERROR: "Check if error is recurring and affects multiple users",
    DataType.BEHAVIOR: "Analyze user journey and identify friction points",
}


@dataclass(frozen=True)
class VisualExplanation:
    """Chart-ready data supporting an explanation"""

    chart_type: str  # line | bar
    data: list[dict[str, Any]]
    highlights: list[dict[str, Any]] = field(default_factory=list)
    annotations: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DetailedExplanation:
    explanation: AnomalyExplanation
    visual_data: list[VisualExplanation]
    confidence: float
    alternative_explanations: list[str]


class AnomalyExplainer:
    """Builds explanations for anomaly scores"""

    def __init__(self):
        self.templates: dict[str, str] = {}
        self.factor_weights: dict[str, float] = {}
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        self.templates = dict(EXPLANATION_TEMPLATES)
        self.factor_weights = dict(FACTOR_WEIGHTS)
        self._initialized = True
        logger.info("Anomaly explainer initialized", templates=len(self.templates))

    def explain(
        self,
        data: MonitoringData,
        score: AnomalyScore,
        baseline: BaselineData | None,
        model_scores: dict[str, float],
    ) -> AnomalyExplanation:
        """Explain why a data point received its anomaly score

        Args:
            data: The flagged data point
            score: Final detector score
            baseline: Baseline of the point's key, if one exists
            model_scores: Per-model scores in [0, 1]

        Returns:
            Explanation with at most five factors sorted by impact

        Raises:
            NotInitializedError: If initialize() was not called
        """
        if not self._initialized:
            raise NotInitializedError("Explainer")

        try:
            factors = self.analyze_factors(data, score, baseline, model_scores)
            return AnomalyExplanation(
                reason=self._primary_reason(data, factors, score),
                factors=tuple(factors),
                suggestions=tuple(self._suggestions(data, factors, score)),
                confidence=self._explanation_confidence(len(factors), score, baseline),
            )
        except Exception as e:
            logger.error("Failed to generate explanation", error=str(e), exc_info=True)
            return self._fallback_explanation(score)

    def explain_detailed(
        self,
        data: MonitoringData,
        score: AnomalyScore,
        baseline: BaselineData | None,
        model_scores: dict[str, float],
        history: list[MonitoringData] | None = None,
    ) -> DetailedExplanation:
        """Explanation plus chart data and alternative interpretations"""
        explanation = self.explain(data, score, baseline, model_scores)
        return DetailedExplanation(
            explanation=explanation,
            visual_data=self._visual_explanations(data, baseline, history),
            confidence=self._explanation_confidence(len(explanation.factors), score, baseline),
            alternative_explanations=self._alternative_explanations(data, score, baseline),
        )

    # ------------------------------------------------------------------
    # Factor analysis
    # ------------------------------------------------------------------

    def analyze_factors(
        self,
        data: MonitoringData,
        score: AnomalyScore,
        baseline: BaselineData | None,
        model_scores: dict[str, float],
    ) -> list[ExplanationFactor]:
        candidates: list[ExplanationFactor] = []

        if baseline is not None:
            candidates.append(self._statistical_deviation(extract_primary_value(data), baseline, score))
        candidates.append(self._temporal_pattern(data, baseline, score))
        if model_scores:
            candidates.append(self._model_consensus(model_scores, score))
        candidates.extend(self._type_specific_factors(data, score, baseline))
        candidates.extend(self._context_factors(data, score))

        factors = [_clamped(f) for f in candidates if f.impact > MIN_FACTOR_IMPACT]
        factors.sort(key=lambda f: (f.impact, self.factor_weights.get(f.name, 0.5)), reverse=True)
        return factors[:MAX_FACTORS]

    def _statistical_deviation(
        self, value: float, baseline: BaselineData, score: AnomalyScore
    ) -> ExplanationFactor:
        multiplier = {Severity.CRITICAL: 1.2, Severity.HIGH: 1.1}.get(score.severity, 1.0)
        z = abs(value - baseline.mean) / (baseline.std_dev or 1.0)
        position = percentile_position(value, baseline)
        evidence = []

        if z > 3:
            impact = 0.9 * multiplier
            description = f"Value is {z:.1f} standard deviations from the normal range"
            low = baseline.mean - 2 * baseline.std_dev
            high = baseline.mean + 2 * baseline.std_dev
            evidence += [f"Z-score: {z:.2f}", f"Normal range: {low:.2f} - {high:.2f}"]
        elif z > 2:
            impact = 0.7 * multiplier
            description = f"Value significantly exceeds normal variation ({z:.1f} σ)"
            evidence.append(f"Z-score: {z:.2f}")
        elif position < 0.05 or position > 0.95:
            impact = 0.6 * multiplier
            side = "low" if position < 0.5 else "high"
            description = f"Value is in the extreme {side} range ({position * 100:.1f}th percentile)"
            evidence.append(f"Percentile position: {position * 100:.1f}%")
        else:
            impact = min(0.5, z / 3) * multiplier
            description = "Value shows moderate deviation from baseline"

        evidence += [f"Current value: {value:.2f}", f"Baseline mean: {baseline.mean:.2f}"]
        return ExplanationFactor(
            name=STATISTICAL_DEVIATION,
            impact=impact,
            description=description,
            evidence=tuple(evidence),
            confidence=0.9 if baseline.sample_size > 100 else min(0.8, baseline.sample_size / 100),
        )

    def _temporal_pattern(
        self, data: MonitoringData, baseline: BaselineData | None, score: AnomalyScore
    ) -> ExplanationFactor:
        timestamp = data.timestamp.astimezone(UTC)
        hour, weekday = timestamp.hour, timestamp.weekday()
        weight = score.score / 100
        impact = 0.0
        description = ""
        evidence = []

        patterns = baseline.seasonal_patterns if baseline is not None else ()
        for pattern in patterns:
            if pattern.strength <= 0.3:
                continue

            if pattern.period is SeasonalPeriod.HOURLY and len(pattern.pattern) >= 24:
                expected = pattern.pattern[hour]
                label = "hourly pattern"
                evidence.append(f"Expected for hour {hour}: {expected:.2f}")
            elif pattern.period is SeasonalPeriod.DAILY and len(pattern.pattern) >= 7:
                expected = pattern.pattern[weekday]
                label = "weekly pattern"
                evidence.append(f"Expected for {DAY_NAMES[weekday]}: {expected:.2f}")
            else:
                continue

            if expected <= 0:
                continue
            deviation = abs(extract_primary_value(data) - expected) / expected
            if deviation > 0.5:
                impact = max(impact, pattern.strength * 0.8 * weight)
                description = f"Value deviates significantly from expected {label}"
                evidence += [
                    f"Pattern strength: {pattern.strength * 100:.1f}%",
                    f"Deviation: {deviation * 100:.1f}%",
                ]

        if hour < 6 or hour > 22:
            impact = max(impact, 0.3)
            description = description or "Anomaly occurred during unusual hours"
            evidence.append(f"Time: {timestamp:%H:%M:%S} UTC")

        return ExplanationFactor(
            name=TEMPORAL_PATTERN,
            impact=impact,
            description=description or "Normal temporal pattern",
            evidence=tuple(evidence),
            confidence=0.8 if patterns else 0.4,
        )

    def _model_consensus(self, model_scores: dict[str, float], score: AnomalyScore) -> ExplanationFactor:
        values = list(model_scores.values())
        mean = sum(values) / len(values)
        std_dev = math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))
        consensus = 1 - (std_dev / mean if mean > 0 else 0.0)

        if consensus > 0.8:
            impact, description = 0.8, "Multiple detection models agree on anomaly"
        elif consensus > 0.6:
            impact, description = 0.6, "Moderate agreement between detection models"
        else:
            impact, description = 0.3, "Mixed signals from different detection models"

        evidence = [f"Model consensus: {consensus * 100:.1f}%"]
        evidence += [f"{name}: {value * 100:.1f}" for name, value in list(model_scores.items())[:3]]
        return ExplanationFactor(
            name=MODEL_CONSENSUS,
            impact=impact * score.confidence,
            description=description,
            evidence=tuple(evidence),
            confidence=0.9 if len(values) >= 2 else 0.5,
        )

    def _type_specific_factors(
        self, data: MonitoringData, score: AnomalyScore, baseline: BaselineData | None
    ) -> list[ExplanationFactor]:
        factors = []

        if isinstance(data, MetricData) and data.previous_value is not None:
            change_rate = abs((data.value - data.previous_value) / (data.previous_value or 1))
            if change_rate > 0.5:
                severity_factor = 1.0 if score.severity is Severity.CRITICAL else 0.8
                factors.append(
                    ExplanationFactor(
                        name=RAPID_CHANGE,
                        impact=min(0.8, change_rate) * severity_factor,
                        description=f"Metric changed by {change_rate * 100:.1f}% from previous value",
                        evidence=(
                            f"Current: {data.value}",
                            f"Previous: {data.previous_value}",
                            f"Change rate: {change_rate * 100:.1f}%",
                        ),
                        confidence=0.9 if baseline is not None else 0.7,
                    )
                )

        elif isinstance(data, LogData):
            level = log_level_code(data.level) or 1
            if level >= 4:
                factors.append(
                    ExplanationFactor(
                        name=HIGH_SEVERITY_LOG,
                        impact=(level / 5) * max(0.5, score.confidence),
                        description=f"{data.level.upper()} level log detected",
                        evidence=(
                            f"Log level: {data.level}",
                            f"Message: {(data.message or '')[:100]}",
                            f"Source: {data.source}",
                        ),
                        confidence=0.95,
                    )
                )

        elif isinstance(data, TraceData):
            if data.duration > HIGH_LATENCY_MS:
                factors.append(
                    ExplanationFactor(
                        name=HIGH_LATENCY,
                        impact=min(0.9, data.duration / 10000) * score.confidence,
                        description=f"Operation took {data.duration:g}ms to complete",
                        evidence=(
                            f"Duration: {data.duration:g}ms",
                            f"Operation: {data.operation}",
                            f"Status: {data.status}",
                        ),
                        confidence=0.85,
                    )
                )
            if data.status in ("error", "timeout"):
                factors.append(
                    ExplanationFactor(
                        name=FAILED_OPERATION,
                        impact=0.8,
                        description=f"Operation failed with status: {data.status}",
                        evidence=(
                            f"Status: {data.status}",
                            f"Operation: {data.operation}",
                            f"Trace ID: {data.trace_id}",
                        ),
                        confidence=0.95,
                    )
                )

        elif isinstance(data, ErrorData):
            boost = 1.2 if score.severity is Severity.CRITICAL else 1.0
            factors.append(
                ExplanationFactor(
                    name=ERROR_SEVERITY,
                    impact=((severity_code(data.severity) or 1) / 4) * boost,
                    description=f"{data.severity.upper()} severity error occurred",
                    evidence=(
                        f"Error type: {data.error_type}",
                        f"Severity: {data.severity}",
                        f"Message: {(data.message or '')[:100]}",
                    ),
                    confidence=0.9,
                )
            )

        elif isinstance(data, BehaviorData) and not data.success:
            factors.append(
                ExplanationFactor(
                    name=FAILED_USER_ACTION,
                    impact=0.7 * score.score / 100,
                    description=f'User action "{data.action}" failed',
                    evidence=(
                        f"Action: {data.action}",
                        f"Page: {data.page}",
                        f"Success: {data.success}",
                        f"Duration: {data.duration or 0:g}ms",
                    ),
                    confidence=0.8,
                )
            )

        return factors

    def _context_factors(self, data: MonitoringData, score: AnomalyScore) -> list[ExplanationFactor]:
        tags = data.tags or {}
        evidence = [f"{key}: {value}" for key, value in tags.items()]
        problem_count = sum(
            1
            for key, value in tags.items()
            if any(marker in key.lower() or marker in str(value).lower() for marker in PROBLEM_MARKERS)
        )
        if problem_count == 0:
            return []

        weight = score.confidence * score.score / 100
        return [
            ExplanationFactor(
                name=CONTEXT_INDICATORS,
                impact=min(0.6, problem_count * 0.2) * weight,
                description="Contextual data suggests problematic conditions",
                evidence=tuple(evidence[:5]),
                confidence=0.7,
            )
        ]

    # ------------------------------------------------------------------
    # Text generation
    # ------------------------------------------------------------------

    def _primary_reason(
        self, data: MonitoringData, factors: list[ExplanationFactor], score: AnomalyScore
    ) -> str:
        if not factors:
            return f"Anomaly detected with {score.score:.1f}/100 score, but cause is unclear"

        top = factors[0]
        factor_key = top.name.lower().replace(" ", "_")
        template = (
            self.templates.get(f"{data.data_type.value}_{factor_key}")
            or self.templates.get(f"generic_{factor_key}")
            or self.templates.get("generic_default")
        )
        if template is None:
            return f"{score.severity.value.upper()} anomaly detected ({score.score:.1f}/100): {top.description}"

        return template.format(
            score=f"{score.score:.1f}",
            severity=score.severity.value,
            factor=top.description,
            confidence=f"{score.confidence * 100:.0f}",
        )

    def _suggestions(
        self, data: MonitoringData, factors: list[ExplanationFactor], score: AnomalyScore
    ) -> list[str]:
        suggestions = []

        if score.severity is Severity.CRITICAL:
            suggestions += [
                "Immediate investigation required - potential system impact",
                "Check system health and recent deployments",
            ]
        elif score.severity is Severity.HIGH:
            suggestions += ["Investigate within the next hour", "Review system logs and metrics"]

        suggestions += [FACTOR_SUGGESTIONS[f.name] for f in factors[:2] if f.name in FACTOR_SUGGESTIONS]
        if data.data_type in TYPE_SUGGESTIONS:
            suggestions.append(TYPE_SUGGESTIONS[data.data_type])

        suggestions += [
            "Set up alerts for similar patterns",
            "Consider updating baseline if this represents new normal",
        ]
        return list(dict.fromkeys(suggestions))[:MAX_SUGGESTIONS]

    def _explanation_confidence(
        self, factor_count: int, score: AnomalyScore, baseline: BaselineData | None
    ) -> float:
        confidence = score.confidence
        if baseline is not None:
            confidence *= 0.7 + 0.3 * min(1.0, baseline.sample_size / 1000)
        else:
            confidence *= 0.5

        confidence *= 0.6 + 0.4 * min(1.0, factor_count / 3)
        return max(0.1, min(0.95, confidence))

    def _fallback_explanation(self, score: AnomalyScore) -> AnomalyExplanation:
        return AnomalyExplanation(
            reason=f"Anomaly detected with score {score.score:.1f}/100",
            factors=(
                ExplanationFactor(
                    name=STATISTICAL_DEVIATION,
                    impact=1.0,
                    description="The value significantly deviates from expected patterns",
                ),
            ),
            suggestions=("Investigate the underlying cause", "Check for system issues"),
            confidence=0.1,
        )

    def _visual_explanations(
        self,
        data: MonitoringData,
        baseline: BaselineData | None,
        history: list[MonitoringData] | None,
    ) -> list[VisualExplanation]:
        visuals = []
        current = extract_primary_value(data)

        if history:
            visuals.append(
                VisualExplanation(
                    chart_type="line",
                    data=[
                        {"timestamp": point.timestamp.isoformat(), "value": extract_primary_value(point)}
                        for point in history
                    ],
                    highlights=[{"timestamp": data.timestamp.isoformat(), "value": current, "type": "anomaly"}],
                    annotations=["Current anomalous point highlighted"],
                )
            )

        if baseline is not None:
            visuals.append(
                VisualExplanation(
                    chart_type="bar",
                    data=[
                        {"label": "Min", "value": baseline.min},
                        {"label": "P25", "value": baseline.percentiles.p25},
                        {"label": "Mean", "value": baseline.mean},
                        {"label": "P75", "value": baseline.percentiles.p75},
                        {"label": "Max", "value": baseline.max},
                        {"label": "Current", "value": current},
                    ],
                    highlights=[{"label": "Current", "type": "anomaly"}],
                    annotations=["Current value compared to baseline distribution"],
                )
            )

        return visuals

    def _alternative_explanations(
        self, data: MonitoringData, score: AnomalyScore, baseline: BaselineData | None
    ) -> list[str]:
        alternatives = []
        if baseline is not None and baseline.sample_size < 100:
            alternatives.append("Insufficient baseline data for accurate detection")
        if data.data_type is DataType.METRIC:
            alternatives.append("Normal business cycle variation")
        elif data.data_type is DataType.LOG:
            alternatives.append("Temporary increase in log verbosity")
        if score.confidence < 0.7:
            alternatives.append("Low confidence detection - may be false positive")
        alternatives.extend(
            [
                "Data quality issue or measurement error",
                "Expected variation due to external factors",
                "System change or configuration update",
            ]
        )
        return alternatives[:3]


def percentile_position(value: float, baseline: BaselineData) -> float:
    """Fraction of the baseline percentiles lying strictly below the value

    0 means below p10, 1 means above p99.
    """
    percentiles = sorted(baseline.percentiles.as_dict().values())
    below = sum(1 for p in percentiles if p < value)
    return below / len(percentiles)


def _clamped(factor: ExplanationFactor) -> ExplanationFactor:
    if 0.0 <= factor.impact <= 1.0:
        return factor
    return replace(factor, impact=min(1.0, max(0.0, factor.impact)))
