"""
Prescription Resolver

Works out what every set of every exercise is prescribed to be.
Pure: no I/O, no mutation of its inputs.

Precedence for a single set, highest first:
    1. assignment per-set override (prescribedMetrics given as an array)
    2. assignment legacy per-set override (prescribedMetrics_sets)
    3. workout per-set default (default_Metrics_sets)
    4. base metrics: assignment global prescribedMetrics, else the
       workout's default_Metrics, else {}

Set count, first that applies:
    1. length of the assignment per-set array
    2. assignment global `sets` count (numeric and > 0)
    3. 3 when the exercise counts sets (settings.sets_counting), else 1
"""

import copy
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.exceptions import NotFoundError
from services.workout_session.aggregator import flow_exercises
from services.workout_session.constants import (
    SETS_KEY,
    DEFAULT_SET_COUNT,
    SETS_COUNTING_SET_COUNT,
)


@dataclass
class PrescribedSet:
    set_number: int
    prescribed: Dict[str, Any]


@dataclass
class ResolvedPrescription:
    exercise_id: str
    sets: List[PrescribedSet] = field(default_factory=list)


def _set_number(entry: Dict[str, Any]) -> Optional[int]:
    raw = entry.get("setNumber")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def _override_metrics(entry: Any) -> Optional[Dict[str, Any]]:
    """Metrics carried by an override entry, or None when it overrides nothing."""
    if not isinstance(entry, dict) or not entry:
        return None
    if "metrics" in entry:
        metrics = entry.get("metrics")
        return metrics if isinstance(metrics, dict) else None
    metrics = {k: v for k, v in entry.items() if k != "setNumber"}
    return metrics or None


def _find_numbered(entries: Any, set_number: int) -> Optional[Dict[str, Any]]:
    for entry in entries if isinstance(entries, list) else []:
        if isinstance(entry, dict) and _set_number(entry) == set_number:
            return _override_metrics(entry)
    return None


def _per_set_override(per_set: List[Any], set_number: int) -> Optional[Dict[str, Any]]:
    """Entries are positional unless they name their setNumber."""
    numbered = _find_numbered(per_set, set_number)
    if numbered is not None:
        return numbered

    index = set_number - 1
    if index < len(per_set):
        entry = per_set[index]
        if isinstance(entry, dict) and _set_number(entry) not in (None, set_number):
            return None
        return _override_metrics(entry)
    return None


def parse_set_count(value: Any) -> Optional[int]:
    """Positive integer set count, or None when the value is unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    count = int(number)
    return count if count > 0 else None


class PrescriptionResolver:
    """Resolves per-set prescriptions for every exercise of a workout."""

    def resolve(
        self,
        assignment: Dict[str, Any],
        workout: Dict[str, Any],
        exercises: List[Dict[str, Any]],
    ) -> List[ResolvedPrescription]:
        """
        Resolve prescriptions for each workout-flow exercise.

        Args:
            assignment: Assignment record (may carry prescriptions)
            workout: Workout template record
            exercises: Exercise records referenced by the workout

        Returns:
            One ResolvedPrescription per flow exercise, in flow order

        Raises:
            NotFoundError: a flow exercise is missing from `exercises`
        """
        by_id = {str(exercise.get("id")): exercise for exercise in exercises if exercise}
        prescriptions = assignment.get("prescriptions") or {}

        resolved = []
        for workout_exercise in flow_exercises(workout):
            exercise_id = str(workout_exercise.get("exercise_id"))
            exercise = by_id.get(exercise_id)
            if exercise is None:
                raise NotFoundError("Exercise", exercise_id)

            resolved.append(self._resolve_exercise(
                exercise,
                workout_exercise,
                prescriptions.get(exercise_id) or {},
            ))
        return resolved

    def _resolve_exercise(
        self,
        exercise: Dict[str, Any],
        workout_exercise: Dict[str, Any],
        assignment_prescription: Dict[str, Any],
    ) -> ResolvedPrescription:
        prescribed_metrics = assignment_prescription.get("prescribedMetrics")
        per_set = prescribed_metrics if isinstance(prescribed_metrics, list) else None
        assignment_global = prescribed_metrics if isinstance(prescribed_metrics, dict) else None

        if assignment_global is not None:
            global_metrics = assignment_global
        else:
            global_metrics = workout_exercise.get("default_Metrics") or {}
        base_metrics = {k: v for k, v in global_metrics.items() if k != SETS_KEY}

        set_count = self._set_count(exercise, per_set, assignment_global)
        legacy_sets = assignment_prescription.get("prescribedMetrics_sets")
        workout_sets = workout_exercise.get("default_Metrics_sets")

        sets = []
        for set_number in range(1, set_count + 1):
            metrics = None
            if per_set is not None:
                metrics = _per_set_override(per_set, set_number)
            if metrics is None:
                metrics = _find_numbered(legacy_sets, set_number)
            if metrics is None:
                metrics = _find_numbered(workout_sets, set_number)
            if metrics is None:
                metrics = base_metrics
            sets.append(PrescribedSet(set_number=set_number, prescribed=copy.deepcopy(metrics)))

        return ResolvedPrescription(exercise_id=str(exercise.get("id")), sets=sets)

    @staticmethod
    def _set_count(
        exercise: Dict[str, Any],
        per_set: Optional[List[Any]],
        assignment_global: Optional[Dict[str, Any]],
    ) -> int:
        if per_set:
            return len(per_set)

        if assignment_global is not None:
            count = parse_set_count(assignment_global.get(SETS_KEY))
            if count is not None:
                return count

        if (exercise.get("settings") or {}).get("sets_counting"):
            return SETS_COUNTING_SET_COUNT
        return DEFAULT_SET_COUNT
