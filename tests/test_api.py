"""
Tests for the HTTP endpoints.
"""
from __future__ import annotations

from models import VolunteerRole


def _creds(username):
    return {"username": username, "password": f"pw-{username}"}


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_student_login_and_progress(client, make_student):
    make_student("IAT001", lhc_docs_status=True)

    res = client.post("/student/login", json={"roll_no": " IAT001 "})

    assert res.status_code == 200
    student = res.json()["student"]
    assert student["roll_no"] == "IAT001"
    assert student["progress"] == 3
    assert student["total_steps"] == 4
    assert student["eligible_for_token"] is True


def test_student_login_unknown_roll_no(client):
    res = client.post("/student/login", json={"roll_no": "NOPE"})
    assert res.status_code == 401


def test_volunteer_login_is_case_insensitive(client, make_volunteer):
    make_volunteer("Asha")

    res = client.post("/volunteer/login", json={"username": "asha", "password": "pw-Asha"})

    assert res.status_code == 200
    assert res.json()["volunteer"]["username"] == "Asha"


def test_volunteer_login_rejects_bad_password(client, make_volunteer):
    make_volunteer("v1")
    res = client.post("/volunteer/login", json={"username": "v1", "password": "wrong"})
    assert res.status_code == 401


def test_issue_token_claims_for_issuing_volunteer(client, make_student, make_volunteer):
    make_student("S1")
    make_volunteer("v1")

    res = client.post("/volunteer/tokens", json={**_creds("v1"), "roll_no": "S1"})

    assert res.status_code == 200
    token = res.json()["token"]
    assert token["token_number"] == 1
    assert token["is_processing"] is True


def test_issue_token_prerequisite_error(client, make_student, make_volunteer):
    make_student("S1", insurance_status=False)
    make_volunteer("v1")

    res = client.post("/volunteer/tokens", json={**_creds("v1"), "roll_no": "S1"})

    assert res.status_code == 400
    assert res.json()["error"] == "prerequisite_not_met"


def test_issue_token_twice_conflicts(client, make_student, make_volunteer):
    make_student("S1")
    make_volunteer("v1")
    client.post("/volunteer/tokens", json={**_creds("v1"), "roll_no": "S1"})

    res = client.post("/volunteer/tokens", json={**_creds("v1"), "roll_no": "S1"})

    assert res.status_code == 409
    assert res.json()["error"] == "already_assigned"


def test_issued_token_goes_to_idle_volunteer(client, make_student, make_volunteer):
    make_student("S1")
    make_volunteer("desk", verifier=False)
    verifier = make_volunteer("v1")

    res = client.post("/volunteer/tokens", json={**_creds("desk"), "roll_no": "S1"})

    assert res.json()["token"]["volunteer_id"] == verifier.id


def test_queue_and_stats(client, issue_many, make_volunteer):
    issue_many(3)
    make_volunteer("v1")
    client.post("/volunteer/claim", json=_creds("v1"))

    res = client.get("/volunteer/queue", params=_creds("v1"))

    assert res.status_code == 200
    body = res.json()
    assert [e["token_number"] for e in body["queue"]] == [1, 2, 3]
    assert body["my_token"]["token_number"] == 1
    assert body["stats"]["queue_depth"] == 2

    stats = client.get("/volunteer/stats", params=_creds("v1")).json()
    assert stats["total_students"] == 3


def test_queue_requires_credentials(client):
    res = client.get("/volunteer/queue", params={"username": "x", "password": "y"})
    assert res.status_code == 401


def test_availability_toggle_claims(client, issue_many, make_volunteer):
    issue_many(1)
    make_volunteer("v1", available=False)

    res = client.post("/volunteer/availability", json={**_creds("v1"), "available": True})

    assert res.status_code == 200
    assert res.json()["volunteer"]["is_available"] is True
    assert res.json()["my_token"]["token_number"] == 1


def test_complete_and_pick_next(client, store, issue_many, make_volunteer):
    tokens = issue_many(2)
    make_volunteer("v1")
    client.post("/volunteer/claim", json=_creds("v1"))

    res = client.post("/volunteer/complete", json={**_creds("v1"), "token_id": tokens[0].id})

    assert res.status_code == 200
    assert res.json()["token"]["volunteer_id"] is None
    assert res.json()["my_token"]["token_number"] == 2
    assert store.get_student("R001").lhc_docs_status is True


def test_complete_unknown_token(client, make_volunteer):
    make_volunteer("v1")
    res = client.post("/volunteer/complete", json={**_creds("v1"), "token_id": 999})
    assert res.status_code == 404


def test_skip_endpoint(client, store, issue_many, make_volunteer):
    issue_many(5)
    make_volunteer("v1")
    client.post("/volunteer/claim", json=_creds("v1"))

    res = client.post("/volunteer/skip", json=_creds("v1"))

    assert res.status_code == 200
    assert res.json()["skipped"]["token_number"] == 4
    assert res.json()["my_token"]["roll_no"] == "R002"
    assert sorted(t.token_number for t in store.list_tokens()) == [1, 2, 3, 4, 5]


def test_skip_without_token(client, make_volunteer):
    make_volunteer("v1")
    res = client.post("/volunteer/skip", json=_creds("v1"))
    assert res.status_code == 409
    assert res.json()["error"] == "no_assigned_token"


def test_step_update_routes_lhc_through_queue(client, store, issue_many, make_volunteer):
    issue_many(2)
    make_volunteer("v1")
    client.post("/volunteer/claim", json=_creds("v1"))

    res = client.post(
        "/volunteer/students/step",
        json={**_creds("v1"), "roll_no": "R001", "step": "lhc_docs_status", "value": True},
    )

    assert res.status_code == 200
    assert res.json()["student"]["progress"] == 3
    assert store.get_token_for_student("R001").volunteer_id is None
    assert store.get_token_for_student("R002").volunteer_id is not None


def test_step_update_rejects_unknown_step(client, make_student, make_volunteer):
    make_student("S1")
    make_volunteer("v1")

    res = client.post(
        "/volunteer/students/step",
        json={**_creds("v1"), "roll_no": "S1", "step": "token_assigned", "value": True},
    )

    assert res.status_code == 400
    assert res.json()["error"] == "invalid_step"


def test_student_token_endpoint(client, issue_many):
    issue_many(2)

    res = client.get("/student/R002/token")

    assert res.status_code == 200
    assert res.json()["position"] == 2
    assert client.get("/student/NOPE/token").status_code == 404


def test_admin_settings(client, make_volunteer):
    make_volunteer("boss", verifier=False, role=VolunteerRole.admin)
    make_volunteer("v1")

    assert client.get("/admin/settings", params=_creds("boss")).json()["skip_offset"] == 3

    res = client.post("/admin/settings", json={**_creds("boss"), "skip_offset": 5})
    assert res.status_code == 200
    assert res.json()["skip_offset"] == 5

    assert client.post("/admin/settings", json={**_creds("v1"), "skip_offset": 2}).status_code == 401
    assert client.post("/admin/settings", json={**_creds("boss"), "skip_offset": 0}).status_code == 422


def test_admin_login_requires_admin_role(client, make_volunteer):
    make_volunteer("boss", role=VolunteerRole.admin)
    make_volunteer("v1")

    assert client.post("/admin/login", json=_creds("boss")).status_code == 200
    assert client.post("/admin/login", json=_creds("v1")).status_code == 401


def test_admin_timeline(client, issue_many, make_volunteer):
    issue_many(1)
    make_volunteer("boss", role=VolunteerRole.admin)

    events = client.get("/admin/timeline", params=_creds("boss")).json()["events"]

    assert [e["event_type"] for e in events] == ["issued"]


def test_student_list_newest_first_with_search(client, store, manager, make_student, make_volunteer):
    make_student("IAT100")
    make_student("IAT200")
    store.update_student("IAT200", name="Asha Rao")
    manager.issue_token("IAT100")
    make_volunteer("v1")

    res = client.get("/volunteer/students", params=_creds("v1"))

    assert res.status_code == 200
    students = res.json()["students"]
    assert [s["roll_no"] for s in students] == ["IAT200", "IAT100"]
    assert students[0]["token"] is None
    assert students[1]["token"]["token_number"] == 1

    by_name = client.get("/volunteer/students", params={**_creds("v1"), "q": "ASHA"}).json()
    assert [s["roll_no"] for s in by_name["students"]] == ["IAT200"]
    by_roll = client.get("/volunteer/students", params={**_creds("v1"), "q": " iat1 "}).json()
    assert [s["roll_no"] for s in by_roll["students"]] == ["IAT100"]
    assert by_roll["count"] == 1


def test_student_list_requires_credentials(client):
    res = client.get("/volunteer/students", params={"username": "x", "password": "y"})
    assert res.status_code == 401


def test_event_stream_requires_credentials(client):
    res = client.get("/volunteer/events", params={"username": "x", "password": "y"})
    assert res.status_code == 401
