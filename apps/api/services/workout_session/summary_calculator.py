"""
Exercise Summary Calculator

Recomputes derived analytics after an athlete reports results.

Counting rules:
- totalSets / completedSets only count prescribed sets (isAdded = False)
- extraSets counts athlete-added sets that were completed
- prescribed totals come from prescribed sets; performed totals from
  completed sets (added ones included)

Scoring rules:
- metric compliance = min(performed / prescribed * 100, 100)
- `rest` and metrics with nothing prescribed are not scored
- exercise compliance = mean metric compliance, or completedSets /
  totalSets when no metric qualifies
- session compliance = mean exercise compliance
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from schemas import ExerciseSummary, MetricSummary, SessionExercise
from services.workout_session.constants import (
    SetStatus,
    REST_METRIC,
    WEIGHT_METRIC,
    REPS_METRIC,
)

logger = logging.getLogger(__name__)


@dataclass
class SessionStats:
    """Session-level totals owned by the calculator."""
    total_exercises: int = 0
    completed_exercises: int = 0
    total_sets: int = 0
    completed_sets: int = 0
    extra_sets: int = 0
    compliance_percent: float = 0
    total_volume_lifted: Optional[float] = None
    average_exercise_rpe: float = 0

    def to_summary_fields(self) -> Dict[str, Any]:
        """camelCase keys as stored in the session summary."""
        return {
            "totalExercises": self.total_exercises,
            "completedExercises": self.completed_exercises,
            "totalSets": self.total_sets,
            "completedSets": self.completed_sets,
            "extraSets": self.extra_sets,
            "compliancePercent": self.compliance_percent,
            "totalVolumeLifted": self.total_volume_lifted,
            "averageExerciseRPE": self.average_exercise_rpe,
        }


@dataclass
class SummaryCalculation:
    exercises: List[SessionExercise]
    exercise_summaries: Dict[str, ExerciseSummary] = field(default_factory=dict)
    stats: SessionStats = field(default_factory=SessionStats)


def metric_number(value: Any) -> Optional[float]:
    """
    Numeric value of a metric entry.

    Accepts {value, unit} objects and raw scalars. Booleans, text and
    anything else unparseable yield None.
    """
    if isinstance(value, dict):
        value = value.get("value")
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    # "nan" / "inf" parse as floats but are not measurements
    return number if math.isfinite(number) else None


def summary_key(exercise_id: str, occurrence: int = 1) -> str:
    """Key of an exercise's entry in summary.exerciseSummaries."""
    return exercise_id if occurrence <= 1 else f"{exercise_id}#{occurrence}"


def _round(value: float) -> float:
    return round(value, 1)


def _mean(values: Iterable[float]) -> Optional[float]:
    values = list(values)
    return sum(values) / len(values) if values else None


class ExerciseSummaryCalculator:
    """Derives per-exercise and session-level analytics from reported sets."""

    def calculate(self, exercises: List[SessionExercise]) -> SummaryCalculation:
        """
        Recompute summaries for the full exercise list.

        Args:
            exercises: Every exercise of the session, with its sets

        Returns:
            SummaryCalculation: exercises without their embedded summary,
            summary key -> ExerciseSummary, and session stats

        An exercise that appears more than once in the flow keeps one
        summary per occurrence: the first under its exerciseId, later
        ones under summary_key() ("<exerciseId>#2", "#3", ...).
        """
        summaries: Dict[str, ExerciseSummary] = {}
        stripped: List[SessionExercise] = []
        compliances: List[float] = []
        rpes: List[float] = []
        volumes: List[float] = []
        occurrences: Dict[str, int] = {}
        stats = SessionStats(total_exercises=len(exercises))

        for exercise in exercises:
            summary = self.summarize_exercise(exercise)
            occurrences[exercise.exercise_id] = occurrences.get(exercise.exercise_id, 0) + 1
            summaries[summary_key(exercise.exercise_id, occurrences[exercise.exercise_id])] = summary
            stripped.append(exercise.model_copy(update={"summary": None}))

            stats.total_sets += summary.total_sets
            stats.completed_sets += summary.completed_sets
            stats.extra_sets += summary.extra_sets
            if summary.total_sets and summary.completed_sets >= summary.total_sets:
                stats.completed_exercises += 1

            compliances.append(summary.compliance_percent)
            if summary.rpe is not None:
                rpes.append(summary.rpe)
            if summary.total_volume is not None:
                volumes.append(summary.total_volume)

        stats.compliance_percent = _round(_mean(compliances) or 0)
        stats.average_exercise_rpe = _round(_mean(rpes) or 0)
        stats.total_volume_lifted = _round(sum(volumes)) if volumes else None

        logger.debug(
            f"Recomputed {len(exercises)} exercise summaries: "
            f"{stats.completed_sets}/{stats.total_sets} sets, compliance {stats.compliance_percent}%"
        )
        return SummaryCalculation(exercises=stripped, exercise_summaries=summaries, stats=stats)

    def summarize_exercise(self, exercise: SessionExercise) -> ExerciseSummary:
        prescribed_sets = [s for s in exercise.sets if not s.is_added]
        total_sets = len(prescribed_sets)
        completed_sets = sum(1 for s in prescribed_sets if s.status == SetStatus.COMPLETED.value)
        extra_sets = sum(
            1 for s in exercise.sets
            if s.is_added and s.status == SetStatus.COMPLETED.value
        )

        metrics = self._metric_breakdown(exercise)
        scored = {
            key: metric for key, metric in metrics.items()
            if key != REST_METRIC and metric.prescribed_total > 0
        }

        metric_compliance = _mean(m.compliance_percent for m in scored.values())
        if metric_compliance is not None:
            compliance = metric_compliance
        elif total_sets:
            compliance = completed_sets / total_sets * 100
        else:
            compliance = 0.0

        ratios = [m.performed_total / m.prescribed_total * 100 for m in scored.values()]
        performance = _mean(ratios)

        return ExerciseSummary(
            total_sets=total_sets,
            completed_sets=completed_sets,
            extra_sets=extra_sets,
            compliance_percent=_round(compliance),
            metrics=metrics,
            rpe=exercise.reported_rpe,
            performance_score=_round(performance) if performance is not None else None,
            total_volume=self._volume(exercise),
        )

    @staticmethod
    def _metric_breakdown(exercise: SessionExercise) -> Dict[str, MetricSummary]:
        keys: List[str] = []
        for s in exercise.sets:
            for key in list(s.prescribed) + list(s.performed or {}):
                if key not in keys:
                    keys.append(key)

        breakdown: Dict[str, MetricSummary] = {}
        for key in keys:
            prescribed_total = 0.0
            performed_total = 0.0
            performed_count = 0

            for s in exercise.sets:
                if not s.is_added:
                    prescribed_total += metric_number(s.prescribed.get(key)) or 0
                if s.status == SetStatus.COMPLETED.value:
                    performed = metric_number((s.performed or {}).get(key))
                    if performed is not None:
                        performed_total += performed
                        performed_count += 1

            metric = MetricSummary(
                prescribed_total=prescribed_total,
                performed_total=performed_total,
                performed_count=performed_count,
                average_performed=_round(performed_total / performed_count) if performed_count else None,
            )
            if key != REST_METRIC and prescribed_total > 0:
                delta = performed_total - prescribed_total
                metric.compliance_percent = _round(min(performed_total / prescribed_total * 100, 100))
                metric.delta = _round(delta)
                metric.delta_percent = _round(delta / prescribed_total * 100)
            breakdown[key] = metric
        return breakdown

    @staticmethod
    def _volume(exercise: SessionExercise) -> Optional[float]:
        """Sum of weight x reps over completed sets that report both."""
        volume = None
        for s in exercise.sets:
            if s.status != SetStatus.COMPLETED.value:
                continue
            performed = s.performed or {}
            weight = metric_number(performed.get(WEIGHT_METRIC))
            reps = metric_number(performed.get(REPS_METRIC))
            if weight is not None and reps is not None:
                volume = (volume or 0) + weight * reps
        return _round(volume) if volume is not None else None
