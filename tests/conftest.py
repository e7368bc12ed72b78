from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

import config
from database import create_db_engine, init_db
from models import VolunteerRole
from services import create_volunteer
from store import QueueStore
from token_queue import TokenQueueManager


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    monkeypatch.setattr(config, "REDIS_URL", None)


@pytest.fixture()
def store(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'arrival.db'}")
    init_db(engine)
    yield QueueStore(engine)
    engine.dispose()


@pytest.fixture()
def manager(store):
    return TokenQueueManager(store)


@pytest.fixture()
def make_student(store):
    """Create a student; ``ready`` students have every token prerequisite done."""

    def _make(roll_no: str, ready: bool = True, **flags):
        fields = {"fees_paid": ready, "hostel_mess_status": ready, "insurance_status": ready}
        fields.update(flags)
        return store.create_student(roll_no, f"Student {roll_no}", **fields)

    return _make


@pytest.fixture()
def make_volunteer(store):
    def _make(username: str, verifier: bool = True, available: bool = True, role=VolunteerRole.volunteer):
        return create_volunteer(
            store,
            username,
            f"pw-{username}",
            role=role,
            can_verify_lhc=verifier,
            is_available=available,
        )

    return _make


@pytest.fixture()
def issue_many(manager, make_student):
    """Issue tokens #1..#n to fresh students with nobody available to claim them."""

    def _issue(n: int):
        tokens = []
        for i in range(1, n + 1):
            make_student(f"R{i:03d}")
            tokens.append(manager.issue_token(f"R{i:03d}"))
        return tokens

    return _issue


@pytest.fixture()
def client(store):
    import main

    main.app.dependency_overrides[main.get_store] = lambda: store
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
