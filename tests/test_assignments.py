import threading
from dataclasses import dataclass, field
from typing import List, Optional

import pytest

from preprimary.assignments import (
    AssignmentRejected,
    AssignmentSessionError,
    AssignmentStore,
    EligibilityIndex,
    Persister,
    SessionState,
    compute_diff,
    save_assignments,
)


@dataclass
class T:
    id: int
    assigned_classes: List[str] = field(default_factory=list)


@dataclass
class S:
    id: int
    class_level: str
    teacher_id: Optional[int] = None


TEACHERS = [T(1, ["Nursery"]), T(2, ["LKG", "UKG"]), T(3, [])]


class FakeBackend:
    def __init__(self, students, failing=()):
        self.students = {s.id: S(s.id, s.class_level, s.teacher_id) for s in students}
        self.failing = set(failing)
        self.calls = []

    def update(self, student_id, teacher_id):
        self.calls.append((student_id, teacher_id))
        if student_id in self.failing:
            raise ConnectionError("server unavailable")
        self.students[student_id].teacher_id = teacher_id

    def snapshot(self):
        return list(self.students.values())


def test_eligibility_matches_authorized_sets():
    index = EligibilityIndex(TEACHERS)
    for t in TEACHERS:
        for level in ("Nursery", "LKG", "UKG"):
            assert index.is_eligible(t.id, level) == (level in t.assigned_classes)


def test_eligibility_unknown_teacher_and_none():
    index = EligibilityIndex(TEACHERS)
    assert not index.is_eligible(99, "Nursery")
    assert not index.is_eligible(None, "LKG")
    assert index.eligible_teachers("UKG") == [2]
    assert index.eligible_teachers("Nursery") == [1]


def test_eligibility_uses_build_time_snapshot():
    t = T(5, ["LKG"])
    index = EligibilityIndex([t])
    t.assigned_classes.append("UKG")
    assert not index.is_eligible(5, "UKG")


def test_compute_diff_of_identical_maps_is_empty():
    seed = {1: 1, 2: None, 3: 2}
    assert compute_diff(seed, dict(seed)) == []


def test_compute_diff_reports_only_changed_keys_in_order():
    seed = {4: None, 1: 1, 2: None, 3: 2}
    proposed = {3: None, 1: 1, 2: 2, 4: 2}
    assert compute_diff(seed, proposed) == [(2, 2), (3, None), (4, 2)]


def test_compute_diff_treats_missing_students_as_unchanged():
    assert compute_diff({1: 1, 2: 2}, {2: None}) == [(2, None)]


def test_scenario_a_two_changes():
    store = AssignmentStore(EligibilityIndex([T(1, ["LKG"]), T(2, ["LKG"])]))
    store.initialize([S(1, "LKG", 1), S(2, "LKG", None)])
    store.propose(1, 2)
    store.propose(2, 1)
    assert store.diff() == [(1, 2), (2, 1)]
    assert store.state == SessionState.EDITING


def test_scenario_b_revert_is_net_noop():
    store = AssignmentStore(EligibilityIndex([T(1, ["LKG"]), T(2, ["LKG"])]))
    store.initialize([S(1, "LKG", 1)])
    store.propose(1, 2)
    assert store.has_changes()
    store.propose(1, 1)
    assert not store.has_changes()
    assert store.diff() == []


def test_propose_rejects_ineligible_teacher_without_mutating():
    store = AssignmentStore(EligibilityIndex(TEACHERS))
    store.initialize([S(10, "Nursery", 1)])
    with pytest.raises(AssignmentRejected) as exc:
        store.propose(10, 2)
    assert exc.value.student_id == 10
    assert exc.value.teacher_id == 2
    assert store.proposed_for(10) == 1
    assert not store.has_changes()


def test_propose_rejects_teacher_with_empty_class_set():
    store = AssignmentStore(EligibilityIndex(TEACHERS))
    store.initialize([S(10, "UKG", None)])
    with pytest.raises(AssignmentRejected):
        store.propose(10, 3)


def test_propose_rejects_unknown_student():
    store = AssignmentStore(EligibilityIndex(TEACHERS))
    store.initialize([S(10, "UKG", None)])
    with pytest.raises(AssignmentRejected):
        store.propose(11, 2)


def test_unassigning_is_always_allowed():
    store = AssignmentStore(EligibilityIndex(TEACHERS))
    store.initialize([S(10, "UKG", 2)])
    store.propose(10, None)
    assert store.diff() == [(10, None)]


def test_store_without_index_stores_what_it_is_given():
    store = AssignmentStore()
    store.initialize([S(1, "Nursery", None)])
    store.propose(1, 42)
    assert store.proposed_for(1) == 42


def test_store_lifecycle_errors():
    store = AssignmentStore()
    with pytest.raises(AssignmentSessionError):
        store.propose(1, None)
    store.initialize([S(1, "LKG", None)])
    with pytest.raises(AssignmentSessionError):
        store.initialize([S(1, "LKG", None)])
    store.dispose()
    assert store.state == SessionState.DISPOSED
    with pytest.raises(AssignmentSessionError):
        store.has_changes()


def test_seed_and_proposed_are_copies():
    store = AssignmentStore()
    store.initialize([S(1, "LKG", None)])
    store.proposed[1] = 7
    store.seed[1] = 7
    assert store.proposed_for(1) is None
    assert not store.has_changes()


def test_scenario_c_partial_failure_and_reload():
    students = [S(1, "LKG", None), S(2, "LKG", None), S(3, "LKG", None)]
    backend = FakeBackend(students, failing={2})
    store = AssignmentStore(EligibilityIndex([T(9, ["LKG"])]))
    store.initialize(backend.snapshot())
    for sid in (1, 2, 3):
        store.propose(sid, 9)

    report = save_assignments(store, Persister(backend.update))

    assert backend.calls == [(1, 9), (2, 9), (3, 9)]
    assert report.succeeded == 2
    assert report.failed == 1
    assert [r.student_id for r in report.failures] == [2]
    assert "server unavailable" in report.failures[0].error
    assert store.state == SessionState.SAVED_WITH_ERRORS

    store.reload(backend.snapshot())
    assert store.state == SessionState.LOADED
    assert store.proposed_for(2) is None
    assert store.proposed_for(1) == 9
    assert not store.has_changes()


def test_successful_save_then_reload_has_no_changes():
    backend = FakeBackend([S(1, "UKG", None), S(2, "UKG", 2)])
    store = AssignmentStore(EligibilityIndex(TEACHERS))
    store.initialize(backend.snapshot())
    store.propose(1, 2)
    store.propose(2, None)
    report = save_assignments(store, Persister(backend.update))
    assert report.as_dict()["succeeded"] == 2
    assert store.state == SessionState.SAVED_CLEAN
    store.reload(backend.snapshot())
    assert not store.has_changes()


def test_saved_store_must_be_reloaded_before_editing():
    backend = FakeBackend([S(1, "LKG", None)])
    store = AssignmentStore(EligibilityIndex([T(9, ["LKG"])]))
    store.initialize(backend.snapshot())
    store.propose(1, 9)
    save_assignments(store, Persister(backend.update))
    assert store.state == SessionState.SAVED_CLEAN
    for action in (lambda: store.propose(1, 9), store.has_changes, store.diff):
        with pytest.raises(AssignmentSessionError):
            action()

    store.reload(backend.snapshot())
    store.propose(1, 9)
    assert save_assignments(store, Persister(backend.update)) is None
    assert backend.calls == [(1, 9)]


def test_scenario_d_no_edits_never_calls_persister():
    backend = FakeBackend([S(1, "UKG", 2)])
    store = AssignmentStore(EligibilityIndex(TEACHERS))
    store.initialize(backend.snapshot())
    assert save_assignments(store, Persister(backend.update)) is None
    assert backend.calls == []
    assert store.state == SessionState.LOADED


def test_cancelled_batch_skips_remaining_items():
    cancel = threading.Event()
    backend = FakeBackend([S(1, "LKG", None), S(2, "LKG", None)])

    def update(student_id, teacher_id):
        backend.update(student_id, teacher_id)
        cancel.set()

    report = Persister(update).apply_changes([(1, 9), (2, 9)], cancel=cancel)
    assert backend.calls == [(1, 9)]
    assert [(r.student_id, r.ok, r.error) for r in report.results] == [(1, True, None), (2, False, "cancelled")]
