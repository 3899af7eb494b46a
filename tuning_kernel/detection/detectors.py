"""
Pattern Detectors: turn a batch of learning events into patterns.

Behavioral Contract:
- Each detector is a pure function of its input batch, except for the
  FeedbackDetector which may read related events from the repository
- Detectors never raise into each other: ``run_detectors`` isolates every
  detector so a failure only drops that detector's contribution
- Patterns are immutable once returned
"""

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol

from tuning_kernel.models.events import LearningEvent, LearningEventType
from tuning_kernel.models.pattern import LearningPattern, PatternMetrics
from tuning_kernel.store.repository import EngineRepository

logger = logging.getLogger(__name__)

WINDOW_SIZE = timedelta(hours=1)
RELATED_EVENT_WINDOW = timedelta(hours=1)
HIGH_RELEVANCE_RATIO = 0.8


class PatternDetector(Protocol):
    """A named analysis over one batch of events."""

    name: str

    async def analyze(self, events: List[LearningEvent]) -> List[LearningPattern]: ...


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _make_pattern(
    pattern_id: str,
    pattern_type: str,
    confidence: float,
    features: dict,
    source: str,
    event_id: Optional[str] = None,
    metrics: Optional[PatternMetrics] = None,
) -> LearningPattern:
    now = datetime.utcnow()
    return LearningPattern(
        id=pattern_id,
        type=pattern_type,
        confidence=confidence,
        features=features,
        metrics=metrics or PatternMetrics(),
        metadata={"source": source, "detected_at": now.isoformat()},
        event_id=event_id,
        created_at=now,
        updated_at=now,
    )


class FeedbackDetector:
    """USER_FEEDBACK events, cross-referenced with their correlated events."""

    name = "feedback"

    def __init__(self, repository: Optional[EngineRepository] = None):
        self.repository = repository

    async def analyze(self, events: List[LearningEvent]) -> List[LearningPattern]:
        patterns = []
        for event in events:
            if event.type != LearningEventType.USER_FEEDBACK:
                continue
            related = self._find_related_events(event, events)
            pattern = self._extract_feedback_pattern(event, related)
            if pattern:
                patterns.append(pattern)
        return patterns

    def _find_related_events(
        self, event: LearningEvent, batch: List[LearningEvent]
    ) -> List[LearningEvent]:
        """Events sharing the correlation id within the last hour."""
        if not event.correlation_id:
            return []
        since = event.timestamp - RELATED_EVENT_WINDOW
        if self.repository is not None:
            return self.repository.find_related_events(
                event.correlation_id, since=since, exclude_id=event.id
            )
        return [
            e for e in batch
            if e.id != event.id
            and e.correlation_id == event.correlation_id
            and e.timestamp >= since
        ]

    def _extract_feedback_pattern(
        self, event: LearningEvent, related: List[LearningEvent]
    ) -> Optional[LearningPattern]:
        metadata = event.metadata or {}
        if not metadata.get("feedbackType"):
            return None

        features: dict = {
            "feedback_type": metadata["feedbackType"],
            "related_event_count": len(related),
        }
        if metadata.get("score") is not None:
            features["score"] = metadata["score"]
        if metadata.get("searchId"):
            features["search_id"] = metadata["searchId"]

        return _make_pattern(
            pattern_id=f"feedback_{event.id}",
            pattern_type="USER_FEEDBACK_PATTERN",
            confidence=0.8,
            features=features,
            source="user_feedback",
            event_id=event.id,
        )


class PerformanceDetector:
    """METRIC_THRESHOLD / SYSTEM_STATE events grouped by metric name."""

    name = "performance"

    async def analyze(self, events: List[LearningEvent]) -> List[LearningPattern]:
        patterns = []
        for metric, metric_events in self._group_by_metric(events).items():
            pattern = self._analyze_metric(metric, metric_events)
            if pattern:
                patterns.append(pattern)
        return patterns

    def _group_by_metric(self, events: List[LearningEvent]) -> Dict[str, List[LearningEvent]]:
        groups: Dict[str, List[LearningEvent]] = OrderedDict()
        for event in events:
            if event.type not in (
                LearningEventType.METRIC_THRESHOLD,
                LearningEventType.SYSTEM_STATE,
            ):
                continue
            metric = (event.metadata or {}).get("metricType") or "unknown"
            groups.setdefault(metric, []).append(event)
        return groups

    def _analyze_metric(
        self, metric: str, events: List[LearningEvent]
    ) -> Optional[LearningPattern]:
        samples = [
            e for e in events
            if _is_number(e.metadata.get("value")) and _is_number(e.metadata.get("threshold"))
        ]
        if not samples:
            return None

        latest = max(samples, key=lambda e: e.timestamp)
        value = float(latest.metadata["value"])
        threshold = float(latest.metadata["threshold"])
        exceeded = value > threshold

        return _make_pattern(
            pattern_id=f"performance_{metric}_{latest.id}",
            pattern_type="PERFORMANCE_THRESHOLD",
            confidence=0.9 if exceeded else 0.6,
            features={
                "metric": metric,
                "exceeded": exceeded,
                "value": value,
                "threshold": threshold,
                "sample_count": len(samples),
            },
            source="performance",
            event_id=latest.id,
        )


class TimeWindowDetector:
    """
    Buckets events into non-overlapping one-hour windows and classifies
    each window's numeric series.

    A window is opened by its first event and closes once an event falls
    more than one hour after that start. Classification precedence is
    ANOMALY > SEASONAL > TREND > TIME_BASED.
    """

    name = "time_window"

    async def analyze(self, events: List[LearningEvent]) -> List[LearningPattern]:
        patterns = []
        for window in self.create_time_windows(events):
            pattern = self._analyze_window(window)
            if pattern:
                patterns.append(pattern)
        return patterns

    def create_time_windows(self, events: List[LearningEvent]) -> List[List[LearningEvent]]:
        if not events:
            return []
        ordered = sorted(events, key=lambda e: e.timestamp)

        windows: List[List[LearningEvent]] = []
        current: List[LearningEvent] = []
        window_start = ordered[0].timestamp
        for event in ordered:
            if event.timestamp - window_start > WINDOW_SIZE:
                if current:
                    windows.append(current)
                current = [event]
                window_start = event.timestamp
            else:
                current.append(event)
        if current:
            windows.append(current)
        return windows

    def _series(self, window: List[LearningEvent]) -> List[float]:
        series_data = (window[0].metadata or {}).get("timeSeriesData")
        if isinstance(series_data, list) and series_data:
            return [
                float(point["value"]) for point in series_data
                if isinstance(point, dict) and _is_number(point.get("value"))
            ]
        values = []
        for event in window:
            for key in ("value", "took"):
                if _is_number(event.metadata.get(key)):
                    values.append(float(event.metadata[key]))
                    break
        return values

    @staticmethod
    def classify(values: List[float]) -> str:
        mean = sum(values) / len(values)
        if any(v > mean * 2 for v in values):
            return "ANOMALY"
        if max(values) > 50:
            return "SEASONAL"
        if values[-1] > values[0] * 1.5:
            return "TREND"
        return "TIME_BASED"

    def _analyze_window(self, window: List[LearningEvent]) -> Optional[LearningPattern]:
        values = self._series(window)
        if not values:
            return None

        pattern_type = self.classify(values)
        first = window[0]
        return _make_pattern(
            pattern_id=f"window_{first.id}",
            pattern_type=pattern_type,
            confidence=0.9,
            features={
                "pattern": pattern_type.lower(),
                "mean": sum(values) / len(values),
                "max": max(values),
                "sample_count": len(values),
                "window_start": first.timestamp.isoformat(),
            },
            source="time_window",
            event_id=first.id,
        )


class SearchRelevanceDetector:
    """SEARCH_PATTERN events whose relevant/total hit ratio exceeds 0.8."""

    name = "search_relevance"

    async def analyze(self, events: List[LearningEvent]) -> List[LearningPattern]:
        patterns = []
        for event in events:
            if event.type != LearningEventType.SEARCH_PATTERN:
                continue
            pattern = self._analyze_search(event)
            if pattern:
                patterns.append(pattern)
        return patterns

    def _analyze_search(self, event: LearningEvent) -> Optional[LearningPattern]:
        metadata = event.metadata or {}
        relevant = metadata.get("relevantHits")
        total = metadata.get("totalHits")
        if not (_is_number(relevant) and _is_number(total)) or not relevant or total <= 0:
            return None

        ratio = relevant / total
        if ratio <= HIGH_RELEVANCE_RATIO:
            return None

        features: dict = {"relevantHits": relevant, "totalHits": total}
        if _is_number(metadata.get("took")):
            features["took"] = metadata["took"]
        if metadata.get("searchType"):
            features["searchType"] = metadata["searchType"]
        if metadata.get("facetsUsed"):
            facets = metadata["facetsUsed"]
            features["facetsUsed"] = facets if isinstance(facets, list) else str(facets).split(",")

        return _make_pattern(
            pattern_id=f"pattern_{event.id}",
            pattern_type="high_relevance_search",
            confidence=ratio,
            features=features,
            source=event.id,
            event_id=event.id,
            metrics=PatternMetrics(
                latency=metadata.get("latency"),
                throughput=metadata.get("throughput"),
                error_rate=metadata.get("errorRate"),
                resource_utilization=metadata.get("resourceUtilization"),
            ),
        )


class UserBehaviorDetector:
    """Aggregates SEARCH_PATTERN events per session."""

    name = "user_behavior"

    async def analyze(self, events: List[LearningEvent]) -> List[LearningPattern]:
        sessions: Dict[str, List[LearningEvent]] = OrderedDict()
        for event in events:
            if event.type == LearningEventType.SEARCH_PATTERN and event.session_id:
                sessions.setdefault(event.session_id, []).append(event)

        patterns = []
        for session_id, session_events in sessions.items():
            facets: List[str] = []
            relevant_hits = 0
            total_hits = 0
            for event in session_events:
                for facet in event.metadata.get("facets") or []:
                    if facet not in facets:
                        facets.append(facet)
                if _is_number(event.metadata.get("relevantHits")):
                    relevant_hits += event.metadata["relevantHits"]
                if _is_number(event.metadata.get("totalHits")):
                    total_hits += event.metadata["totalHits"]

            patterns.append(_make_pattern(
                pattern_id=f"behavior_{session_id}",
                pattern_type="USER_BEHAVIOR",
                confidence=0.7,
                features={
                    "relevantHits": relevant_hits,
                    "totalHits": total_hits,
                    "facetsUsed": facets,
                    "relevance_score": relevant_hits / total_hits if total_hits else None,
                    "session_length": len(session_events),
                },
                source="user_behavior",
            ))
        return patterns


def default_detectors(
    repository: Optional[EngineRepository] = None,
    include_behavior: bool = False,
) -> List[PatternDetector]:
    """The standard detector set."""
    detectors: List[PatternDetector] = [
        FeedbackDetector(repository),
        PerformanceDetector(),
        TimeWindowDetector(),
        SearchRelevanceDetector(),
    ]
    if include_behavior:
        detectors.append(UserBehaviorDetector())
    return detectors


async def run_detectors(
    detectors: List[PatternDetector], events: List[LearningEvent]
) -> List[LearningPattern]:
    """
    Run all detectors concurrently and flatten their patterns in detector
    order. A failing detector is logged and contributes nothing.
    """
    results = await asyncio.gather(
        *(detector.analyze(events) for detector in detectors),
        return_exceptions=True,
    )
    patterns: List[LearningPattern] = []
    for detector, result in zip(detectors, results):
        if isinstance(result, BaseException):
            logger.error(
                "Pattern detector %s failed",
                getattr(detector, "name", type(detector).__name__),
                exc_info=result,
            )
            continue
        patterns.extend(result)
    return patterns
