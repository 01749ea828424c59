from __future__ import annotations

import csv
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
OUT_PATH = ROOT / "docs" / "assignment_roster.csv"
BACKEND_PATH = ROOT / "backend"
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from sqlalchemy import select  # noqa: E402

from preprimary.assignments import EligibilityIndex  # noqa: E402
from preprimary.main import SessionLocal, Student, User  # noqa: E402


FIELDNAMES = ["student_id", "student_name", "class_level", "teacher_id", "teacher_name", "eligible_teacher_ids_semicolon"]


def build_roster(db) -> list[dict]:
    teachers = db.scalars(select(User).where(User.role == "teacher")).all()
    names = {t.id: t.name for t in teachers}
    index = EligibilityIndex(teachers)
    rows = []
    for s in db.scalars(select(Student).order_by(Student.class_level.asc(), Student.name.asc(), Student.id.asc())).all():
        rows.append(
            {
                "student_id": s.id,
                "student_name": s.name,
                "class_level": s.class_level,
                "teacher_id": s.teacher_id if s.teacher_id is not None else "",
                "teacher_name": names.get(s.teacher_id, ""),
                "eligible_teacher_ids_semicolon": ";".join(str(tid) for tid in index.eligible_teachers(s.class_level)),
            }
        )
    return rows


def main() -> None:
    out_path = Path(sys.argv[1]) if len(sys.argv) > 1 else OUT_PATH
    with SessionLocal() as db:
        rows = build_roster(db)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=FIELDNAMES)
        writer.writeheader()
        writer.writerows(rows)
    print({"rows": len(rows), "unassigned": sum(1 for r in rows if r["teacher_id"] == ""), "path": str(out_path)})


if __name__ == "__main__":
    main()
