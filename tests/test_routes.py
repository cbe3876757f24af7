import json
import threading
import time

import httpx
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from assessment_service import crud
from assessment_service.config import Settings
from assessment_service.main import create_app
from assessment_service.notifications import CompletionNotifier

from .conftest import MC_OPTIONS, build_test


def start(client, assignment_id):
    r = client.post(f"/assignments/{assignment_id}/start")
    assert r.status_code == 200, r.text
    return r.json()


def answer(client, assignment_id, question_id, value):
    r = client.post(f"/assignments/{assignment_id}/responses", json={"question_id": question_id, "value": value})
    assert r.status_code == 200, r.text
    return r.json()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy", "service": "assessment-service"}
    assert client.get("/").json()["service"] == "Assessment Service"


def test_questions_hide_answer_key(client, api_db):
    t, _, _ = build_test(api_db, [("multiple_choice", {"options": MC_OPTIONS}), ("self_rating", {"rating_min": 1, "rating_max": 10})])
    r = client.get(f"/tests/{t.id}/questions")
    assert r.status_code == 200
    body = r.json()
    assert [q["question_type"] for q in body] == ["multiple_choice", "self_rating"]
    assert body[0]["options"] == [
        {"value": "a", "label": "Never"},
        {"value": "b", "label": "Sometimes"},
        {"value": "c", "label": "Always"},
    ]
    assert body[1]["rating_max"] == 10


def test_unknown_ids_are_404(client):
    assert client.get("/assignments/999").status_code == 404
    assert client.get("/tests/999/questions").status_code == 404
    assert client.patch("/responses/999/grade", json={"percentage": 10}).status_code == 404


def test_full_weighted_flow(client, api_db):
    _, qs, a = build_test(api_db, [
        ("likert_scale", {"scale": 5, "weight": 2}),
        ("self_rating", {"rating_min": 1, "rating_max": 10}),
    ])
    body = start(client, a.id)
    assert body["status"] == "in_progress"
    assert body["remaining_seconds"] is None

    answer(client, a.id, qs[0].id, "3")
    answer(client, a.id, qs[1].id, 4)

    r = client.post(f"/assignments/{a.id}/submit", json={"time_spent_seconds": 95})
    assert r.status_code == 200
    out = r.json()
    assert out["submitted"] is True
    result = out["result"]
    assert result["status"] == "completed"
    assert result["provisional"] is False
    bd = result["breakdown"]
    assert bd["total_weighted_score"] == 10
    assert bd["total_weighted_max_score"] == 20
    assert bd["final_percentage"] == 50
    assert bd["category"] == "intermediate"
    assert result["category_info"]["label_en"] == "Intermediate"
    assert set(bd["rows"][0]) == {
        "question_id", "question_type", "weight", "raw_score", "max_score",
        "weighted_score", "weighted_max_score", "percentage", "category",
        "is_correct", "needs_grading",
    }

    # the report view reads the same numbers
    assert client.get(f"/assignments/{a.id}/results").json() == result


def test_start_is_idempotent_and_closed_after_submit(client, api_db):
    _, _, a = build_test(api_db, [("likert_scale", {})])
    first = start(client, a.id)
    again = start(client, a.id)
    assert again["started_at"] == first["started_at"]

    client.post(f"/assignments/{a.id}/submit")
    r = client.post(f"/assignments/{a.id}/start")
    assert r.status_code == 409


def test_start_empty_test_is_rejected(client, api_db):
    _, _, a = build_test(api_db, [])
    r = client.post(f"/assignments/{a.id}/start")
    assert r.status_code == 400
    assert r.json()["detail"] == "Test has no questions"
    assert client.get(f"/assignments/{a.id}").json()["status"] == "pending"


def test_answer_before_start_and_after_submit(client, api_db):
    _, qs, a = build_test(api_db, [("likert_scale", {})])
    r = client.post(f"/assignments/{a.id}/responses", json={"question_id": qs[0].id, "value": "2"})
    assert r.status_code == 409

    start(client, a.id)
    client.post(f"/assignments/{a.id}/submit")
    r = client.post(f"/assignments/{a.id}/responses", json={"question_id": qs[0].id, "value": "2"})
    assert r.status_code == 409
    assert r.json()["detail"] == "Assignment already completed"


def test_second_submit_returns_current_result(client, api_db):
    _, qs, a = build_test(api_db, [("likert_scale", {})])
    start(client, a.id)
    answer(client, a.id, qs[0].id, "5")
    first = client.post(f"/assignments/{a.id}/submit").json()
    second = client.post(f"/assignments/{a.id}/submit").json()
    assert first["submitted"] is True
    assert second["submitted"] is False
    assert second["result"] == first["result"]


def test_submit_pending_is_rejected(client, api_db):
    _, _, a = build_test(api_db, [("likert_scale", {})])
    assert client.post(f"/assignments/{a.id}/submit").status_code == 409


def test_bulk_save_and_list_responses(client, api_db):
    _, qs, a = build_test(api_db, [
        ("multiple_choice", {"options": MC_OPTIONS}),
        ("open_text", {}),
    ])
    start(client, a.id)
    r = client.post(f"/assignments/{a.id}/responses/bulk", json={"answers": [
        {"question_id": qs[1].id, "value": "Shadow the on-call rotation"},
        {"question_id": qs[0].id, "value": "c"},
    ]})
    assert r.status_code == 200
    assert len(r.json()) == 2

    listed = client.get(f"/assignments/{a.id}/responses").json()
    assert [x["question_id"] for x in listed] == [qs[0].id, qs[1].id]
    assert listed[0]["is_correct"] is True
    assert listed[1]["score"] is None

    bad = client.post(f"/assignments/{a.id}/responses/bulk", json={"answers": []})
    assert bad.status_code == 422


def test_open_text_grading_flow(client, api_db):
    _, qs, a = build_test(api_db, [("open_text", {})], user_id=42)
    start(client, a.id)
    saved = answer(client, a.id, qs[0].id, "I would write a runbook first")
    response_id = saved["response"]["id"]

    result = client.post(f"/assignments/{a.id}/submit").json()["result"]
    assert result["breakdown"]["final_percentage"] == 0
    assert result["breakdown"]["needs_grading"] is True
    assert result["provisional"] is True

    pending = client.get("/grading/pending").json()
    assert [(p["assignment_id"], p["ungraded_count"]) for p in pending] == [(a.id, 1)]

    graded = client.patch(f"/responses/{response_id}/grade", json={"percentage": 80})
    assert graded.status_code == 200
    body = graded.json()
    assert body["breakdown"]["rows"][0]["raw_score"] == 8
    assert body["breakdown"]["final_percentage"] == 80
    assert body["breakdown"]["category"] == "advanced"
    assert body["provisional"] is False
    assert client.get("/grading/pending").json() == []

    again = client.patch(f"/responses/{response_id}/grade", json={"percentage": 80}).json()
    assert again == body

    mine = client.get("/me/results", headers={"X-User-ID": "42"}).json()
    assert mine == client.get("/users/42/results").json()
    assert [(m["assignment_id"], m["final_percentage"], m["category"], m["provisional"]) for m in mine] == [
        (a.id, 80, "advanced", False),
    ]


def test_grading_machine_scored_response_is_rejected(client, api_db):
    _, qs, a = build_test(api_db, [("multiple_choice", {"options": MC_OPTIONS})])
    start(client, a.id)
    rid = answer(client, a.id, qs[0].id, "b")["response"]["id"]
    client.post(f"/assignments/{a.id}/submit")

    r = client.patch(f"/responses/{rid}/grade", json={"percentage": 100})
    assert r.status_code == 400
    assert client.patch(f"/responses/{rid}/grade", json={"percentage": 101}).status_code == 422


def test_autosave_failure_is_soft(client, api_db, monkeypatch):
    _, qs, a = build_test(api_db, [("likert_scale", {}), ("likert_scale", {})])
    start(client, a.id)

    def broken(*args, **kwargs):
        raise OperationalError("INSERT INTO assessment_response", {}, Exception("connection reset"))

    monkeypatch.setattr(crud, "upsert_response", broken)
    first = answer(client, a.id, qs[0].id, "4")
    second = answer(client, a.id, qs[1].id, "4")
    assert (first["saved"], first["warning"]) == (False, None)
    assert second["saved"] is False
    assert second["warning"]

    monkeypatch.undo()
    assert answer(client, a.id, qs[1].id, "4")["saved"] is True
    assert client.get(f"/assignments/{a.id}").json()["status"] == "in_progress"


def test_zero_duration_session_is_submitted_by_timer(client, app, api_db):
    _, qs, a = build_test(api_db, [("likert_scale", {})], duration_minutes=0)
    body = start(client, a.id)
    assert body["status"] == "in_progress"
    assert body["remaining_seconds"] == 0

    deadline = time.monotonic() + 3
    status = None
    while time.monotonic() < deadline:
        s = app.state.SessionLocal()
        try:
            status = crud.get_assignment(s, a.id).status
        finally:
            s.close()
        if status == "completed" and not app.state.timers.active():
            break
        time.sleep(0.02)

    assert status == "completed"
    assert client.get(f"/assignments/{a.id}/responses").json() == []
    assert app.state.timers.active() == []


def test_manual_submit_cancels_timer(client, app, api_db):
    _, _, a = build_test(api_db, [("likert_scale", {})], duration_minutes=30)
    body = start(client, a.id)
    assert 0 < body["remaining_seconds"] <= 1800
    assert app.state.timers.active() == [a.id]

    client.post(f"/assignments/{a.id}/submit")
    assert app.state.timers.active() == []


def test_submit_does_not_wait_for_recommendation_service(db_url):
    delivered = threading.Event()
    payloads = []

    def slow(request):
        time.sleep(1.5)
        payloads.append(json.loads(request.content))
        delivered.set()
        return httpx.Response(200)

    notifier = CompletionNotifier("http://recommendations:8005", transport=httpx.MockTransport(slow))
    app = create_app(Settings(database_url=db_url, timer_tick_seconds=0.05), notifier=notifier)
    with TestClient(app) as client:
        s = app.state.SessionLocal()
        try:
            _, qs, a = build_test(s, [("likert_scale", {"scale": 5})])
        finally:
            s.close()
        start(client, a.id)
        answer(client, a.id, qs[0].id, "4")

        began = time.monotonic()
        r = client.post(f"/assignments/{a.id}/submit")
        elapsed = time.monotonic() - began
        assert r.status_code == 200
        assert elapsed < 1.0

        assert delivered.wait(timeout=5)
    assert payloads[0]["reason"] == "submitted"
    assert payloads[0]["breakdown"]["final_percentage"] == 80


def test_float_answer_matches_integer_option(client, api_db):
    options = [
        {"value": "1", "label": "Rarely", "score": 0},
        {"value": "2", "label": "Often", "score": 10, "is_correct": True},
    ]
    _, qs, a = build_test(api_db, [("multiple_choice", {"options": options})])
    start(client, a.id)
    saved = answer(client, a.id, qs[0].id, 2.0)
    assert saved["response"]["value"] == "2"
    assert saved["response"]["is_correct"] is True

    result = client.post(f"/assignments/{a.id}/submit").json()["result"]
    assert result["breakdown"]["final_percentage"] == 100
