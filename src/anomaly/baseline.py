"""
Baseline learning for normal-behaviour modelling.

Keeps a rolling time series per baseline key and derives an immutable
statistical snapshot from it once enough history exists:
mean/stddev/percentiles, seasonal bucket patterns (hour of day, day of week,
ISO week) and a least-squares trend.

Writers to the same key are serialised with a per-key lock. Readers only ever
see complete BaselineData snapshots, so get_baseline() needs no locking.
"""

import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta

import numpy as np
import pandas as pd
import structlog

from .features import baseline_key, extract_primary_value, is_valid_value
from .types import (
    STABLE_TREND,
    BaselineData,
    MonitoringData,
    Percentiles,
    SeasonalPattern,
    SeasonalPeriod,
    TimeSeriesPoint,
    TrendData,
    TrendDirection,
    to_datetime,
    utc_now,
)

logger = structlog.get_logger(__name__)

MAX_HISTORY_SIZE = 50000
MIN_DATA_POINTS = 100
RETENTION = timedelta(days=7)

HOURLY_MIN_POINTS = 24 * 7  # one week of hourly samples
WEEKLY_MIN_POINTS = 24 * 7 * 4
MIN_WEEKS = 4
MIN_PATTERN_STRENGTH = 0.1
TREND_MIN_POINTS = 10
TREND_SLOPE_THRESHOLD = 0.01

PERCENTILE_RANKS = (10, 25, 50, 75, 90, 95, 99)


@dataclass(frozen=True)
class BaselineCheck:
    """Outcome of comparing a single value against a baseline"""

    is_anomaly: bool
    score: float  # 0-1
    reason: str


class BaselineManager:
    """Maintains per-key time series and their statistical baselines"""

    def __init__(
        self,
        max_history_size: int = MAX_HISTORY_SIZE,
        min_data_points: int = MIN_DATA_POINTS,
        retention: timedelta = RETENTION,
        cleanup_interval_seconds: float | None = 300.0,
    ):
        self.max_history_size = max_history_size
        self.min_data_points = min_data_points
        self.retention = retention
        self.cleanup_interval_seconds = cleanup_interval_seconds

        self._baselines: dict[str, BaselineData] = {}
        self._series: dict[str, list[TimeSeriesPoint]] = {}
        self._key_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

        self._initialized = False
        self._stop_cleanup = threading.Event()
        self._cleanup_thread: threading.Thread | None = None

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        self._baselines = {}
        self._series = {}
        self._initialized = True

        if self.cleanup_interval_seconds:
            self._stop_cleanup.clear()
            self._cleanup_thread = threading.Thread(
                target=self._cleanup_loop, name="baseline-cleanup", daemon=True
            )
            self._cleanup_thread.start()

        logger.info(
            "Baseline manager initialized",
            max_history_size=self.max_history_size,
            min_data_points=self.min_data_points,
        )

    def shutdown(self) -> None:
        self._stop_cleanup.set()
        if self._cleanup_thread is not None:
            self._cleanup_thread.join(timeout=1.0)
            self._cleanup_thread = None

        self._baselines = {}
        self._series = {}
        self._initialized = False
        logger.info("Baseline manager shut down")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_baseline(self, data: MonitoringData) -> BaselineData | None:
        """Current baseline for the data point's key, or None if there is not enough history yet"""
        if not self._initialized:
            return None
        return self._baselines.get(baseline_key(data))

    def get_all_baselines(self) -> dict[str, BaselineData]:
        return dict(self._baselines)

    def get_series(self, key: str) -> list[TimeSeriesPoint]:
        return list(self._series.get(key, []))

    def get_baseline_stats(self) -> dict:
        """Coverage statistics about the stored baselines"""
        baselines = list(self._baselines.values())
        series = list(self._series.values())
        return {
            "total_baselines": len(baselines),
            "time_series_count": len(series),
            "avg_data_points": sum(len(points) for points in series) / max(1, len(series)),
            "oldest_baseline": min((b.last_updated for b in baselines), default=None),
            "newest_baseline": max((b.last_updated for b in baselines), default=None),
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def update_baselines(self, data_points: list[MonitoringData]) -> list[str]:
        """Append data points to their series and refresh baselines

        Args:
            data_points: Incoming monitoring data (any mix of variants)

        Returns:
            Keys whose baseline was (re)computed
        """
        if not self._initialized:
            logger.warning("Baseline update ignored, manager not initialized")
            return []

        start_time = time.perf_counter()
        grouped = self._group_data_points(data_points)

        updated = [key for key, points in grouped.items() if self._update_key(key, points)]

        logger.debug(
            "Baselines updated",
            data_points=len(data_points),
            keys=len(grouped),
            recomputed=len(updated),
            elapsed_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )
        return updated

    def recalculate_all(self) -> int:
        """Force recomputation of every baseline with enough history"""
        count = 0
        for key in list(self._series):
            with self._lock_for(key):
                points = self._series.get(key, [])
                if len(points) >= self.min_data_points:
                    self._baselines[key] = self.calculate_baseline(points)
                    count += 1

        logger.info("All baselines recalculated", count=count)
        return count

    def cleanup(self, now: datetime | None = None) -> int:
        """Evict points outside the retention window and enforce the size cap

        Returns:
            Number of series that were trimmed
        """
        cutoff = (to_datetime(now) if now else utc_now()) - self.retention
        cleaned = 0

        for key in list(self._series):
            with self._lock_for(key):
                points = self._series.get(key, [])
                kept = [p for p in points if p.timestamp > cutoff][-self.max_history_size :]
                if len(kept) == len(points):
                    continue

                cleaned += 1
                if kept:
                    self._series[key] = kept
                    continue

                del self._series[key]
                self._baselines.pop(key, None)

            with self._locks_guard:
                self._key_locks.pop(key, None)

        if cleaned:
            logger.info("Cleaned up time series", count=cleaned)
        return cleaned

    def export_baselines(self) -> dict[str, dict]:
        return {key: baseline.to_dict() for key, baseline in self._baselines.items()}

    def restore_baselines(self, snapshots: dict[str, dict]) -> None:
        for key, snapshot in snapshots.items():
            self._baselines[key] = BaselineData.from_dict(snapshot)
        logger.info("Baselines restored", count=len(snapshots))

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            return self._key_locks[key]

    def _group_data_points(self, data_points: list[MonitoringData]) -> dict[str, list[TimeSeriesPoint]]:
        grouped: dict[str, list[TimeSeriesPoint]] = defaultdict(list)
        dropped = 0

        for data in data_points:
            value = extract_primary_value(data)
            if not is_valid_value(value):
                dropped += 1
                continue

            grouped[baseline_key(data)].append(
                TimeSeriesPoint(
                    timestamp=data.timestamp,
                    value=value,
                    source=data.source,
                    data_type=data.data_type,
                )
            )

        if dropped:
            logger.warning("Dropped non-finite data points", count=dropped)
        return grouped

    def _update_key(self, key: str, new_points: list[TimeSeriesPoint]) -> bool:
        with self._lock_for(key):
            merged = sorted(self._series.get(key, []) + new_points, key=lambda p: p.timestamp)
            merged = merged[-self.max_history_size :]
            self._series[key] = merged

            if len(merged) < self.min_data_points:
                return False

            self._baselines[key] = self.calculate_baseline(merged)
            return True

    def _cleanup_loop(self) -> None:
        while not self._stop_cleanup.wait(self.cleanup_interval_seconds):
            try:
                self.cleanup()
            except Exception as e:
                logger.error("Periodic baseline cleanup failed", error=str(e), exc_info=True)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def calculate_baseline(self, points: list[TimeSeriesPoint]) -> BaselineData:
        values = np.array([p.value for p in points], dtype=float)
        values = values[np.isfinite(values)]

        if values.size == 0:
            return self._empty_baseline()

        quantiles = np.percentile(values, PERCENTILE_RANKS)
        percentiles = Percentiles(*(float(q) for q in quantiles))

        return BaselineData(
            mean=float(values.mean()),
            std_dev=float(values.std()),
            min=float(values.min()),
            max=float(values.max()),
            percentiles=percentiles,
            seasonal_patterns=tuple(self.detect_seasonal_patterns(points)),
            trend=self.calculate_trend(values),
            last_updated=utc_now(),
            sample_size=len(points),
        )

    def detect_seasonal_patterns(self, points: list[TimeSeriesPoint]) -> list[SeasonalPattern]:
        """Hourly/daily patterns need a week of hourly data, weekly needs four"""
        if len(points) < HOURLY_MIN_POINTS:
            return []

        frame = pd.DataFrame(
            {
                "timestamp": pd.to_datetime([p.timestamp for p in points], utc=True),
                "value": [p.value for p in points],
            }
        )

        candidates = [self._extract_hourly_pattern(frame), self._extract_daily_pattern(frame)]
        if len(points) >= WEEKLY_MIN_POINTS:
            candidates.append(self._extract_weekly_pattern(frame))

        return [pattern for pattern in candidates if pattern.strength > MIN_PATTERN_STRENGTH]

    def _extract_hourly_pattern(self, frame: pd.DataFrame) -> SeasonalPattern:
        averages = (
            frame.groupby(frame["timestamp"].dt.hour)["value"].mean().reindex(range(24), fill_value=0.0)
        )
        return self._build_pattern(SeasonalPeriod.HOURLY, averages.to_numpy(dtype=float))

    def _extract_daily_pattern(self, frame: pd.DataFrame) -> SeasonalPattern:
        # Monday = 0
        averages = (
            frame.groupby(frame["timestamp"].dt.dayofweek)["value"]
            .mean()
            .reindex(range(7), fill_value=0.0)
        )
        return self._build_pattern(SeasonalPeriod.DAILY, averages.to_numpy(dtype=float))

    def _extract_weekly_pattern(self, frame: pd.DataFrame) -> SeasonalPattern:
        iso = frame["timestamp"].dt.isocalendar()
        averages = frame.groupby([iso["year"], iso["week"]])["value"].mean()

        if len(averages) < MIN_WEEKS:
            return SeasonalPattern(period=SeasonalPeriod.WEEKLY, pattern=(), strength=0.0)
        return self._build_pattern(SeasonalPeriod.WEEKLY, averages.to_numpy(dtype=float))

    @staticmethod
    def _build_pattern(period: SeasonalPeriod, averages: np.ndarray) -> SeasonalPattern:
        # Coefficient of variation of the bucket averages
        pattern_mean = float(averages.mean())
        strength = float(averages.std()) / pattern_mean if pattern_mean > 0 else 0.0
        return SeasonalPattern(
            period=period,
            pattern=tuple(float(v) for v in averages),
            strength=min(1.0, max(0.0, strength)),
        )

    @staticmethod
    def calculate_trend(values: np.ndarray) -> TrendData:
        """Ordinary least squares over (index, value)"""
        n = len(values)
        if n < TREND_MIN_POINTS:
            return STABLE_TREND

        x = np.arange(n, dtype=float)
        dx = x - x.mean()
        dy = values - values.mean()
        sxx = float(np.dot(dx, dx))
        sxy = float(np.dot(dx, dy))
        syy = float(np.dot(dy, dy))

        slope = sxy / sxx
        intercept = float(values.mean()) - slope * float(x.mean())
        r = sxy / np.sqrt(sxx * syy) if syy > 0 else 0.0

        if abs(slope) > TREND_SLOPE_THRESHOLD:
            direction = TrendDirection.INCREASING if slope > 0 else TrendDirection.DECREASING
        else:
            direction = TrendDirection.STABLE

        return TrendData(
            slope=slope,
            intercept=intercept,
            correlation=float(r * r),
            direction=direction,
        )

    @staticmethod
    def _empty_baseline() -> BaselineData:
        return BaselineData(
            mean=0.0,
            std_dev=1.0,
            min=0.0,
            max=1.0,
            percentiles=Percentiles(0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0),
            seasonal_patterns=(),
            trend=STABLE_TREND,
            last_updated=utc_now(),
            sample_size=0,
        )

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    @staticmethod
    def is_anomalous(value: float, baseline: BaselineData | None, sensitivity: float = 2.0) -> BaselineCheck:
        """Z-score rule OR outside the p10-p90 band"""
        if baseline is None or baseline.sample_size == 0:
            return BaselineCheck(is_anomaly=False, score=0.0, reason="No baseline available")
        if not is_valid_value(value):
            return BaselineCheck(is_anomaly=False, score=0.0, reason="Invalid value")

        z_score = abs(value - baseline.mean) / (baseline.std_dev or 1.0)
        z_anomaly = z_score > sensitivity
        below = value < baseline.percentiles.p10
        above = value > baseline.percentiles.p90

        if z_anomaly:
            reason = f"High z-score ({z_score:.2f})"
        elif below:
            reason = "Below 10th percentile"
        elif above:
            reason = "Above 90th percentile"
        else:
            reason = "Normal"

        return BaselineCheck(
            is_anomaly=z_anomaly or below or above,
            score=min(1.0, z_score / 3),
            reason=reason,
        )
