from __future__ import annotations

import argparse
import csv
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parents[1]
BACKEND_PATH = ROOT / "backend"
DEFAULT_INPUT_CSV = ROOT / "docs" / "assignment_roster.csv"
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from preprimary.assignments import AssignmentRejected, AssignmentStore, EligibilityIndex, Persister, save_assignments  # noqa: E402
from preprimary.client import RecordsAPIError, RecordsClient  # noqa: E402


logger = logging.getLogger("reassign_students_csv")

UNASSIGNED_TOKENS = {"", "none", "null", "unassigned", "-"}


def parse_teacher_id(raw: object) -> Optional[int]:
    s = str(raw or "").strip()
    if s.lower() in UNASSIGNED_TOKENS:
        return None
    return int(s)


def load_proposals(path: Path) -> list[tuple[int, Optional[int]]]:
    proposals: list[tuple[int, Optional[int]]] = []
    with path.open("r", encoding="utf-8-sig", newline="") as f:
        for line_no, row in enumerate(csv.DictReader(f), start=2):
            sid = str(row.get("student_id") or "").strip()
            if not sid:
                continue
            try:
                proposals.append((int(sid), parse_teacher_id(row.get("teacher_id"))))
            except ValueError as exc:
                raise SystemExit(f"{path}:{line_no}: invalid id ({exc})") from exc
    return proposals


def run(client: RecordsClient, proposals: list[tuple[int, Optional[int]]], dry_run: bool = False, cancel: Optional[threading.Event] = None) -> dict:
    store = AssignmentStore(EligibilityIndex(client.list_teachers()))
    store.initialize(client.list_students())
    rejected = []
    for student_id, teacher_id in proposals:
        try:
            store.propose(student_id, teacher_id)
        except AssignmentRejected as exc:
            logger.warning("Skipping %s", exc)
            rejected.append({"student_id": exc.student_id, "teacher_id": exc.teacher_id, "reason": exc.reason})
    changes = store.diff()
    if dry_run or not changes:
        store.dispose()
        return {"status": "dry_run" if dry_run else "noop", "changes": changes, "rejected": rejected}
    report = save_assignments(store, Persister(client.set_student_teacher), cancel=cancel)
    store.reload(client.list_students())
    for item in report.failures:
        try:
            store.propose(item.student_id, item.teacher_id)
        except AssignmentRejected as exc:
            logger.warning("Dropping failed change after reload: %s", exc)
    pending = store.diff()
    summary = {
        "status": "saved_with_errors" if report.failed else "saved",
        **report.as_dict(),
        "rejected": rejected,
        "still_pending": bool(pending),
        "pending": pending,
    }
    store.dispose()
    return summary


def cancel_on_interrupt() -> threading.Event:
    """Turn Ctrl-C into a cancel request so the batch stops between items."""
    cancel = threading.Event()

    def _handle(signum, frame):
        logger.warning("Interrupted; finishing the current update and skipping the rest")
        cancel.set()

    signal.signal(signal.SIGINT, _handle)
    return cancel


def main() -> None:
    parser = argparse.ArgumentParser(description="Apply student -> teacher assignments from a CSV through the records API.")
    parser.add_argument("csv", nargs="?", default=str(DEFAULT_INPUT_CSV))
    parser.add_argument("--api-url", default=os.getenv("RECORDS_API_URL", "http://127.0.0.1:8000"))
    parser.add_argument("--email", default=os.getenv("RECORDS_EMAIL", "admin@school.com"))
    parser.add_argument("--password", default=os.getenv("RECORDS_PASSWORD"))
    parser.add_argument("--timeout", type=float, default=float(os.getenv("RECORDS_TIMEOUT", "10")))
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    input_csv = Path(args.csv)
    if not input_csv.is_absolute():
        input_csv = ROOT / input_csv
    if not input_csv.exists():
        raise SystemExit(f"Missing input CSV: {input_csv}")
    if not args.password:
        raise SystemExit("Password required (--password or RECORDS_PASSWORD)")

    proposals = load_proposals(input_csv)
    client = RecordsClient(args.api_url, timeout=args.timeout)
    try:
        client.login(args.email, args.password)
        result = run(client, proposals, dry_run=args.dry_run, cancel=cancel_on_interrupt())
    except RecordsAPIError as exc:
        raise SystemExit(f"Could not load records: {exc}") from exc

    for sid, tid in result.get("changes", []):
        print(f"student {sid} -> {tid if tid is not None else 'unassigned'}")
    for item in result.get("results", []):
        if not item["ok"]:
            print(f"FAILED student {item['student_id']}: {item['error']}")
    for item in result["rejected"]:
        print(f"REJECTED student {item['student_id']} -> {item['teacher_id']}: {item['reason']}")
    for sid, tid in result.get("pending", []):
        print(f"PENDING student {sid} -> {tid if tid is not None else 'unassigned'}")
    print({k: v for k, v in result.items() if k not in {"changes", "results", "rejected", "pending"}})


if __name__ == "__main__":
    main()
