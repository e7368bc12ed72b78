from __future__ import annotations

import json

import pytest

import config
import services
from errors import InvalidStep
from models import VolunteerRole


class FakeRedis:
    def __init__(self):
        self.values = {}
        self.published = []

    def get(self, key):
        return self.values.get(key)

    def setex(self, key, ttl, value):
        self.values[key] = str(value)

    def incr(self, key):
        self.values[key] = str(int(self.values[key]) + 1)

    def publish(self, channel, message):
        self.published.append((channel, message))


@pytest.fixture()
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(config, "REDIS_URL", "redis://fake")
    monkeypatch.setattr(services, "_redis_client", fake)
    return fake


def test_passwords_are_hashed(store):
    volunteer = services.create_volunteer(store, "v1", "secret-pass")

    assert volunteer.password_hash != "secret-pass"
    assert services.verify_password("secret-pass", volunteer.password_hash)
    assert not services.verify_password("other", volunteer.password_hash)


def test_authenticate_prefers_exact_username(store):
    lower = services.create_volunteer(store, "sam", "pw-lower")
    upper = services.create_volunteer(store, "SAM", "pw-upper")

    assert services.authenticate_volunteer(store, "SAM", "pw-upper").id == upper.id
    assert services.authenticate_volunteer(store, "Sam", "pw-lower").id == lower.id
    assert services.authenticate_volunteer(store, "sam", "nope") is None
    assert services.authenticate_volunteer(store, "", "pw-lower") is None


def test_authenticate_with_role(store):
    services.create_volunteer(store, "v1", "pw")

    assert services.authenticate_volunteer(store, "v1", "pw", role=VolunteerRole.admin) is None
    assert services.authenticate_volunteer(store, "v1", "pw", role=VolunteerRole.volunteer) is not None


def test_ensure_admin_creates_then_rekeys(store):
    created = services.ensure_admin(store, "admin", "first")
    assert created.role == VolunteerRole.admin

    services.ensure_admin(store, "admin", "second")

    assert services.authenticate_volunteer(store, "admin", "second", role=VolunteerRole.admin).id == created.id
    assert services.authenticate_volunteer(store, "admin", "first") is None


def test_update_student_step_plain_write(manager, store, make_student):
    make_student("S1", ready=False)

    student = services.update_student_step(manager, "S1", "fees_paid", True)

    assert student.fees_paid is True
    assert services.student_summary(student)["eligible_for_token"] is False


def test_update_student_step_unknown(manager, make_student):
    make_student("S1")
    with pytest.raises(InvalidStep):
        services.update_student_step(manager, "S1", "roll_no", True)


def test_rate_limit_without_redis():
    assert services.check_rate_limit("anyone") is True


def test_rate_limit_blocks_after_limit(fake_redis):
    results = [services.check_rate_limit("v1", limit=3) for _ in range(5)]
    assert results == [True, True, True, False, False]


def test_broadcast_caches_and_publishes(manager, issue_many, fake_redis):
    issue_many(2)

    services.broadcast_queue(manager)

    cached = services.get_cached_queue()
    assert [e["token_number"] for e in cached["queue"]] == [1, 2]
    channel, message = fake_redis.published[0]
    assert channel == services.UPDATES_CHANNEL
    assert json.loads(message)["type"] == "queue_update"
