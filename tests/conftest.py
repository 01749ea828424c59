import importlib

import pytest
from fastapi.testclient import TestClient


PASSWORD = "lkg123"


@pytest.fixture
def app_module(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'records.db'}")
    monkeypatch.setenv("SESSION_SECRET", "test-secret")
    monkeypatch.setenv("DEFAULT_PASSWORD", PASSWORD)
    monkeypatch.setenv("BCRYPT_ROUNDS", "4")
    monkeypatch.setenv("DEEPSEEK_API_KEY", "")

    import preprimary.main

    mod = importlib.reload(preprimary.main)
    yield mod
    mod.engine.dispose()


@pytest.fixture
def client(app_module):
    with TestClient(app_module.app) as c:
        yield c


def login(client, email, password=PASSWORD):
    resp = client.post("/api/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["session_token"]


def call(client, method, path, token, params=None, **kwargs):
    return client.request(method, path, params={"session_token": token, **(params or {})}, **kwargs)


@pytest.fixture
def admin_token(client):
    return login(client, "admin@school.com")


@pytest.fixture
def teachers(client, admin_token):
    resp = call(client, "GET", "/api/teachers", admin_token)
    assert resp.status_code == 200
    by_class = {}
    for t in resp.json():
        for c in t["assigned_classes"]:
            by_class[c] = t
    return by_class


@pytest.fixture
def make_student(client, admin_token):
    def _make(name="Asha", class_level="LKG", teacher_id=None, **extra):
        body = {"name": name, "age": 4, "class_level": class_level, "learning_ability": "Average", "teacher_id": teacher_id, **extra}
        resp = call(client, "POST", "/api/students", admin_token, json=body)
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _make
