"""
Tests for SessionDataAggregator

Loads the event -> assignment -> workout -> exercises -> users chain
from a seeded SQLite store.
"""
import threading

import pytest

from core.exceptions import NotFoundError
from services.workout_session.aggregator import SessionDataAggregator, flow_exercises
from fixtures.session_fixtures import (
    ASSIGNMENT_ID,
    EVENT_ID,
    PLANK_ID,
    SQUAT_ID,
    WORKOUT_ID,
    make_exercise,
    make_workout,
)


class TestAggregate:
    """aggregate()"""

    def test_loads_full_graph(self, store, seed):
        seed()

        data = SessionDataAggregator(store).aggregate(EVENT_ID)

        assert data.event["id"] == EVENT_ID
        assert data.assignment["id"] == ASSIGNMENT_ID
        assert data.workout["id"] == WORKOUT_ID
        assert [exercise["id"] for exercise in data.exercises] == [SQUAT_ID, PLANK_ID]
        assert data.athlete["email"] == "jordan@example.com"
        assert data.coach["name"] == "Coach Kim"

    def test_exercises_keep_flow_order_with_repeats(self, store, seed, records):
        records["workouts"] = [make_workout(exercises=[
            {"exercise_id": PLANK_ID},
            {"exercise_id": SQUAT_ID},
            {"exercise_id": PLANK_ID},
        ])]
        seed()

        data = SessionDataAggregator(store, max_workers=2).aggregate(EVENT_ID)

        assert [exercise["id"] for exercise in data.exercises] == [PLANK_ID, SQUAT_ID, PLANK_ID]

    def test_missing_event(self, store):
        with pytest.raises(NotFoundError) as exc_info:
            SessionDataAggregator(store).aggregate("nope")

        assert exc_info.value.detail == "Calendar event not found: nope"

    def test_missing_assignment(self, store, seed, records):
        records["workout_assignments"] = []
        seed()

        with pytest.raises(NotFoundError) as exc_info:
            SessionDataAggregator(store).aggregate(EVENT_ID)

        assert exc_info.value.resource == "Workout assignment"

    def test_missing_workout(self, store, seed, records):
        records["workouts"] = []
        seed()

        with pytest.raises(NotFoundError) as exc_info:
            SessionDataAggregator(store).aggregate(EVENT_ID)

        assert exc_info.value.identifier == WORKOUT_ID

    def test_every_missing_exercise_listed(self, store, seed, records):
        records["workouts"] = [make_workout(exercises=[
            {"exercise_id": SQUAT_ID},
            {"exercise_id": "ex-lunge"},
            {"exercise_id": "ex-row"},
        ])]
        seed()

        with pytest.raises(NotFoundError) as exc_info:
            SessionDataAggregator(store).aggregate(EVENT_ID)

        assert exc_info.value.resource == "Exercises"
        assert "ex-lunge" in exc_info.value.detail
        assert "ex-row" in exc_info.value.detail
        assert SQUAT_ID not in exc_info.value.detail

    def test_missing_athlete(self, store, seed, records):
        records["users"] = [u for u in records["users"] if u["userId"] != "athlete-1"]
        seed()

        with pytest.raises(NotFoundError) as exc_info:
            SessionDataAggregator(store).aggregate(EVENT_ID)

        assert exc_info.value.resource == "Athlete"

    def test_missing_coach_is_tolerated(self, store, seed, records):
        records["users"] = [u for u in records["users"] if u["userId"] != "coach-1"]
        seed()

        data = SessionDataAggregator(store).aggregate(EVENT_ID)

        assert data.coach is None

    def test_workout_without_exercises(self, store, seed, records):
        records["workouts"] = [make_workout(exercises=[])]
        seed()

        data = SessionDataAggregator(store).aggregate(EVENT_ID)

        assert data.exercises == []


class _RendezvousStore:
    """Store wrapper whose exercise lookups block until all of them have started."""

    def __init__(self, store, parties):
        self.store = store
        self.barrier = threading.Barrier(parties)
        self.lookup_threads = []

    def find_by_id(self, collection, doc_id):
        if collection == "exercises":
            self.lookup_threads.append(threading.current_thread().name)
            # Raises BrokenBarrierError if the lookups run one at a time
            self.barrier.wait(timeout=5)
        return self.store.find_by_id(collection, doc_id)

    def find_one(self, collection, filter):
        return self.store.find_one(collection, filter)


class TestConcurrentExerciseLookups:
    """The exercise hop fans out over the lookup pool"""

    def test_lookups_overlap(self, store, seed):
        seed()
        rendezvous = _RendezvousStore(store, parties=2)

        data = SessionDataAggregator(rendezvous, max_workers=2).aggregate(EVENT_ID)

        assert [exercise["id"] for exercise in data.exercises] == [SQUAT_ID, PLANK_ID]
        assert len(rendezvous.lookup_threads) == 2
        assert len(set(rendezvous.lookup_threads)) == 2
        assert all(name.startswith("exercise-lookup") for name in rendezvous.lookup_threads)

    def test_pool_never_exceeds_distinct_exercises(self, store, seed, records):
        records["workouts"] = [make_workout(exercises=[{"exercise_id": SQUAT_ID}, {"exercise_id": SQUAT_ID}])]
        seed()
        rendezvous = _RendezvousStore(store, parties=1)

        data = SessionDataAggregator(rendezvous, max_workers=8).aggregate(EVENT_ID)

        assert [exercise["id"] for exercise in data.exercises] == [SQUAT_ID, SQUAT_ID]
        assert len(rendezvous.lookup_threads) == 1


class TestFlowExercises:
    def test_missing_flow(self):
        assert flow_exercises({"id": "w"}) == []

    def test_entries_in_order(self):
        workout = make_workout()

        assert [e["exercise_id"] for e in flow_exercises(workout)] == [SQUAT_ID, PLANK_ID]
