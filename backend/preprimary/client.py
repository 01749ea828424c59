from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import requests


logger = logging.getLogger(__name__)


class RecordsAPIError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class TeacherRow:
    id: int
    name: str
    assigned_classes: list[str]


@dataclass
class StudentRow:
    id: int
    name: str
    class_level: str
    teacher_id: Optional[int]


class RecordsClient:
    """Thin wrapper over the records REST API.

    Every call carries the session token as a query parameter and is bounded by
    ``timeout`` seconds. Non-2xx responses and transport errors are raised as
    ``RecordsAPIError``.
    """

    def __init__(self, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.token: Optional[str] = None

    def _request(self, method: str, path: str, **kwargs) -> Any:
        params = dict(kwargs.pop("params", None) or {})
        if self.token:
            params["session_token"] = self.token
        try:
            resp = self.session.request(method, f"{self.base_url}{path}", params=params, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise RecordsAPIError(f"{method} {path} failed: {exc}") from exc
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("detail")
            except ValueError:
                detail = resp.text
            raise RecordsAPIError(f"{method} {path} returned {resp.status_code}: {detail}", status_code=resp.status_code)
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    def login(self, email: str, password: str) -> dict:
        body = self._request("POST", "/api/auth/login", json={"email": email, "password": password})
        self.token = body["session_token"]
        return body

    def list_teachers(self) -> list[TeacherRow]:
        return [TeacherRow(id=t["id"], name=t["name"], assigned_classes=list(t.get("assigned_classes") or [])) for t in self._request("GET", "/api/teachers")]

    def list_students(self, page_size: int = 500) -> list[StudentRow]:
        out: list[StudentRow] = []
        offset = 0
        while True:
            page = self._request("GET", "/api/students", params={"limit": page_size, "offset": offset, "sort_by": "id"})
            out.extend(StudentRow(id=s["id"], name=s["name"], class_level=s["class_level"], teacher_id=s.get("teacher_id")) for s in page)
            if len(page) < page_size:
                break
            offset += page_size
        return out

    def set_student_teacher(self, student_id: int, teacher_id: Optional[int]) -> None:
        self._request("PATCH", f"/api/students/{student_id}", json={"teacher_id": teacher_id})
