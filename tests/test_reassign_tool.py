import importlib
import signal
import threading

import pytest

import reassign_students_csv as tool
from conftest import call
from preprimary.client import RecordsAPIError, RecordsClient, StudentRow, TeacherRow


class FakeClient:
    def __init__(self, failing=()):
        self.teachers = [TeacherRow(1, "Anita", ["Nursery"]), TeacherRow(2, "Binay", ["LKG"])]
        self.students = {
            10: StudentRow(10, "Asha", "Nursery", None),
            11: StudentRow(11, "Bina", "LKG", 2),
            12: StudentRow(12, "Chet", "LKG", None),
        }
        self.failing = set(failing)
        self.updates = []

    def list_teachers(self):
        return list(self.teachers)

    def list_students(self):
        return [StudentRow(s.id, s.name, s.class_level, s.teacher_id) for s in self.students.values()]

    def set_student_teacher(self, student_id, teacher_id):
        self.updates.append((student_id, teacher_id))
        if student_id in self.failing:
            raise RecordsAPIError("PATCH failed", status_code=500)
        self.students[student_id].teacher_id = teacher_id


def test_load_proposals_parses_unassigned_tokens(tmp_path):
    path = tmp_path / "roster.csv"
    path.write_text("student_id,teacher_id\n10,1\n11,unassigned\n\n12,\n", encoding="utf-8")
    assert tool.load_proposals(path) == [(10, 1), (11, None), (12, None)]


def test_load_proposals_rejects_bad_ids(tmp_path):
    path = tmp_path / "roster.csv"
    path.write_text("student_id,teacher_id\nabc,1\n", encoding="utf-8")
    with pytest.raises(SystemExit):
        tool.load_proposals(path)


def test_dry_run_reports_changes_without_writing():
    fake = FakeClient()
    out = tool.run(fake, [(10, 1), (11, 2), (12, 1)], dry_run=True)
    assert out["status"] == "dry_run"
    assert out["changes"] == [(10, 1)]
    assert [r["student_id"] for r in out["rejected"]] == [12]
    assert fake.updates == []


def test_unchanged_roster_is_noop():
    fake = FakeClient()
    assert tool.run(fake, [(11, 2)])["status"] == "noop"
    assert fake.updates == []


def test_partial_failure_keeps_failed_items_pending():
    fake = FakeClient(failing={11})
    out = tool.run(fake, [(10, 1), (11, None), (12, 2)])
    assert fake.updates == [(10, 1), (11, None), (12, 2)]
    assert out["status"] == "saved_with_errors"
    assert (out["succeeded"], out["failed"]) == (2, 1)
    assert fake.students[11].teacher_id == 2
    assert out["still_pending"] is True
    assert out["pending"] == [(11, None)]


def test_interrupt_skips_remaining_items():
    fake = FakeClient()
    cancel = threading.Event()
    original = fake.set_student_teacher

    def update(student_id, teacher_id):
        original(student_id, teacher_id)
        cancel.set()

    fake.set_student_teacher = update
    out = tool.run(fake, [(10, 1), (12, 2)], cancel=cancel)
    assert fake.updates == [(10, 1)]
    assert [(r["student_id"], r["error"]) for r in out["results"]] == [(10, None), (12, "cancelled")]
    assert out["pending"] == [(12, 2)]


def test_cancel_on_interrupt_sets_event_from_sigint(monkeypatch):
    installed = {}
    monkeypatch.setattr(tool.signal, "signal", lambda signum, handler: installed.setdefault(signum, handler))
    cancel = tool.cancel_on_interrupt()
    assert not cancel.is_set()
    installed[signal.SIGINT](signal.SIGINT, None)
    assert cancel.is_set()


def test_clean_save():
    fake = FakeClient()
    out = tool.run(fake, [(12, 2)])
    assert out["status"] == "saved"
    assert fake.students[12].teacher_id == 2


def test_records_client_against_app(client, teachers, make_student):
    s = make_student("Asha", "LKG")
    api = RecordsClient("http://testserver", session=client)
    api.login("admin@school.com", "lkg123")
    assert {t.id for t in api.list_teachers()} == {t["id"] for t in teachers.values()}
    assert [row.id for row in api.list_students(page_size=1)] == [s["id"]]
    api.set_student_teacher(s["id"], teachers["LKG"]["id"])
    assert api.list_students()[0].teacher_id == teachers["LKG"]["id"]
    with pytest.raises(RecordsAPIError) as exc:
        api.set_student_teacher(s["id"], teachers["UKG"]["id"])
    assert exc.value.status_code == 400


def test_export_roster_lists_eligible_teachers(app_module, client, admin_token, teachers, make_student):
    import export_assignment_roster

    roster = importlib.reload(export_assignment_roster)
    make_student("Asha", "LKG", teachers["LKG"]["id"])
    make_student("Mina", "Nursery")
    with app_module.SessionLocal() as db:
        rows = roster.build_roster(db)
    assert [r["student_name"] for r in rows] == ["Asha", "Mina"]
    assert rows[0]["teacher_name"] == teachers["LKG"]["name"]
    assert rows[1]["teacher_id"] == ""
    assert rows[1]["eligible_teacher_ids_semicolon"] == str(teachers["Nursery"]["id"])
