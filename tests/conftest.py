from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from faceattend import database


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = str(tmp_path / "attendance.db")
    monkeypatch.setattr(database, "DB_PATH", path)
    database.setup_database()
    return path


@pytest.fixture
def client(db_path):
    from main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def class_start():
    return datetime(2026, 10, 17, 9, 0)
