from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional, Protocol


logger = logging.getLogger(__name__)

CLASS_LEVELS = ("Nursery", "LKG", "UKG")


class TeacherLike(Protocol):
    id: int
    assigned_classes: Optional[list[str]]


class StudentLike(Protocol):
    id: int
    class_level: str
    teacher_id: Optional[int]


class AssignmentRejected(ValueError):
    def __init__(self, student_id: int, teacher_id: Optional[int], reason: str):
        super().__init__(f"student {student_id} -> teacher {teacher_id}: {reason}")
        self.student_id = student_id
        self.teacher_id = teacher_id
        self.reason = reason


class AssignmentSessionError(RuntimeError):
    pass


class EligibilityIndex:
    def __init__(self, teachers: Iterable[TeacherLike]):
        self._classes_by_teacher: dict[int, frozenset[str]] = {}
        for t in teachers:
            self._classes_by_teacher[t.id] = frozenset(t.assigned_classes or [])

    def is_eligible(self, teacher_id: Optional[int], class_level: str) -> bool:
        allowed = self._classes_by_teacher.get(teacher_id)
        if not allowed:
            return False
        return class_level in allowed

    def eligible_teachers(self, class_level: str) -> list[int]:
        return sorted(tid for tid, allowed in self._classes_by_teacher.items() if class_level in allowed)


class SessionState(str, Enum):
    NEW = "NEW"
    LOADED = "LOADED"
    EDITING = "EDITING"
    SAVING = "SAVING"
    SAVED_CLEAN = "SAVED_CLEAN"
    SAVED_WITH_ERRORS = "SAVED_WITH_ERRORS"
    DISPOSED = "DISPOSED"


def compute_diff(seed: dict[int, Optional[int]], proposed: dict[int, Optional[int]]) -> list[tuple[int, Optional[int]]]:
    changes = []
    for student_id in sorted(proposed):
        if student_id not in seed:
            continue
        if proposed[student_id] != seed[student_id]:
            changes.append((student_id, proposed[student_id]))
    return changes


class AssignmentStore:
    """Proposed student -> teacher mapping for one editing session.

    The store is seeded from persisted student records and only ever changes in
    memory. When an ``EligibilityIndex`` is supplied, ``propose`` refuses
    teachers that may not take the student's class level instead of storing
    them.
    """

    def __init__(self, eligibility: Optional[EligibilityIndex] = None):
        self.eligibility = eligibility
        self.state = SessionState.NEW
        self._seed: dict[int, Optional[int]] = {}
        self._proposed: dict[int, Optional[int]] = {}
        self._class_levels: dict[int, str] = {}

    def initialize(self, students: Iterable[StudentLike]) -> None:
        if self.state != SessionState.NEW:
            raise AssignmentSessionError(f"cannot initialize store in state {self.state.value}")
        self._load(students)

    def reload(self, students: Iterable[StudentLike]) -> None:
        if self.state not in {SessionState.SAVED_CLEAN, SessionState.SAVED_WITH_ERRORS, SessionState.LOADED}:
            raise AssignmentSessionError(f"cannot reload store in state {self.state.value}")
        self._load(students)

    def _load(self, students: Iterable[StudentLike]) -> None:
        self._seed = {}
        self._class_levels = {}
        for s in students:
            self._seed[s.id] = s.teacher_id
            self._class_levels[s.id] = s.class_level
        self._proposed = dict(self._seed)
        self.state = SessionState.LOADED

    def _require_open(self) -> None:
        # after a save the seed is stale until reload()
        if self.state not in {SessionState.LOADED, SessionState.EDITING}:
            raise AssignmentSessionError(f"store is not open (state {self.state.value})")

    def propose(self, student_id: int, teacher_id: Optional[int]) -> None:
        self._require_open()
        if student_id not in self._seed:
            raise AssignmentRejected(student_id, teacher_id, "unknown student")
        if teacher_id is not None and self.eligibility is not None:
            class_level = self._class_levels[student_id]
            if not self.eligibility.is_eligible(teacher_id, class_level):
                raise AssignmentRejected(student_id, teacher_id, f"teacher is not authorized for {class_level}")
        self._proposed[student_id] = teacher_id
        self.state = SessionState.EDITING

    def proposed_for(self, student_id: int) -> Optional[int]:
        self._require_open()
        return self._proposed[student_id]

    def has_changes(self) -> bool:
        self._require_open()
        return any(self._proposed[sid] != seed for sid, seed in self._seed.items())

    def diff(self) -> list[tuple[int, Optional[int]]]:
        self._require_open()
        return compute_diff(self._seed, self._proposed)

    @property
    def seed(self) -> dict[int, Optional[int]]:
        return dict(self._seed)

    @property
    def proposed(self) -> dict[int, Optional[int]]:
        return dict(self._proposed)

    def dispose(self) -> None:
        self._seed = {}
        self._proposed = {}
        self._class_levels = {}
        self.state = SessionState.DISPOSED


@dataclass
class ChangeResult:
    student_id: int
    teacher_id: Optional[int]
    ok: bool
    error: Optional[str] = None


@dataclass
class PersistReport:
    results: list[ChangeResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)

    @property
    def failures(self) -> list[ChangeResult]:
        return [r for r in self.results if not r.ok]

    def as_dict(self) -> dict:
        return {
            "changed": len(self.results),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [
                {"student_id": r.student_id, "teacher_id": r.teacher_id, "ok": r.ok, "error": r.error} for r in self.results
            ],
        }


UpdateFn = Callable[[int, Optional[int]], None]


class Persister:
    def __init__(self, update: UpdateFn):
        self.update = update

    def apply_changes(
        self,
        change_set: list[tuple[int, Optional[int]]],
        cancel: Optional[threading.Event] = None,
    ) -> PersistReport:
        report = PersistReport()
        for student_id, teacher_id in change_set:
            if cancel is not None and cancel.is_set():
                report.results.append(ChangeResult(student_id, teacher_id, ok=False, error="cancelled"))
                continue
            try:
                self.update(student_id, teacher_id)
            except Exception as exc:
                logger.warning("Assignment update failed for student %s -> %s: %s", student_id, teacher_id, exc)
                report.results.append(ChangeResult(student_id, teacher_id, ok=False, error=str(exc) or exc.__class__.__name__))
                continue
            report.results.append(ChangeResult(student_id, teacher_id, ok=True))
        logger.info("Applied %s assignment changes: %s succeeded, %s failed", len(change_set), report.succeeded, report.failed)
        return report


def save_assignments(
    store: AssignmentStore,
    persister: Persister,
    cancel: Optional[threading.Event] = None,
) -> Optional[PersistReport]:
    if not store.has_changes():
        return None
    change_set = store.diff()
    store.state = SessionState.SAVING
    report = persister.apply_changes(change_set, cancel=cancel)
    store.state = SessionState.SAVED_WITH_ERRORS if report.failed else SessionState.SAVED_CLEAN
    return report
