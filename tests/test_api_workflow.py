"""
tests/test_api_workflow.py — Workflow REST API.

Covers:
    1.  Catalog endpoints: list, create, update, delete, seed, validate
    2.  Composed view, raw progress, phase grouping
    3.  PUT upsert with completed / skipped status
    4.  Dialog actions: complete, skip (notes required), start, guard conflicts
    5.  Reset (including no-op on an untouched step) and assignees
    6.  Bulk summaries
    7.  Actor identity from Bearer token and X-Actor-Id header
    8.  Error mapping: 400 / 404 / 409 / 422 / 500
    9.  Health endpoints and response headers
    10. CLI: seed-workflow-steps, validate-workflow-steps

Marker: integration (full HTTP round-trip through Flask test client).
"""

from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from app.middleware.actor_context import encode_actor_token
from app.models import db
from app.models.workflow import WorkflowStep

BASE = "/api/v1/workflow"


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════


def _step_url(step_key, entity_id="ord-1", entity_type="order"):
    return f"{BASE}/{entity_type}/{entity_id}/steps/{step_key}"


def _complete(client, step_key, entity_id="ord-1", **body):
    return client.post(f"{_step_url(step_key, entity_id)}/complete", json=body)


def _view(client, entity_id="ord-1", entity_type="order", **params):
    rv = client.get(f"{BASE}/{entity_type}/{entity_id}", query_string=params)
    assert rv.status_code == 200
    return rv.get_json()


def _status(view, step_key):
    return next(s for s in view["steps"] if s["step_key"] == step_key)["status"]


# ═════════════════════════════════════════════════════════════════════════════
# 1. Catalog
# ═════════════════════════════════════════════════════════════════════════════


class TestCatalogApi:
    def test_list_steps(self, client, abc_steps):
        rv = client.get(f"{BASE}/steps", query_string={"entity_type": "order"})
        assert rv.status_code == 200
        body = rv.get_json()
        assert body["total"] == 3
        assert [s["step_key"] for s in body["steps"]] == ["step_a", "step_b", "step_c"]

    def test_list_steps_requires_entity_type(self, client):
        rv = client.get(f"{BASE}/steps")
        assert rv.status_code == 400
        assert rv.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_list_steps_unknown_entity_type(self, client):
        rv = client.get(f"{BASE}/steps", query_string={"entity_type": "invoice"})
        assert rv.status_code == 422

    def test_create_update_delete(self, client, abc_steps):
        rv = client.post(f"{BASE}/steps", json={
            "entity_type": "order", "step_key": "step_d", "step_name": "Step D",
            "blocked_by_steps": ["step_c"],
        })
        assert rv.status_code == 201
        step = rv.get_json()
        assert step["step_order"] == 13

        rv = client.put(f"{BASE}/steps/{step['id']}", json={"step_name_cn": "第四步"})
        assert rv.status_code == 200
        assert rv.get_json()["step_name_cn"] == "第四步"

        rv = client.delete(f"{BASE}/steps/{step['id']}")
        assert rv.status_code == 200
        rv = client.get(f"{BASE}/steps", query_string={"entity_type": "order"})
        assert rv.get_json()["total"] == 3

    def test_create_duplicate(self, client, abc_steps):
        rv = client.post(f"{BASE}/steps", json={
            "entity_type": "order", "step_key": "step_a", "step_name": "Again",
        })
        assert rv.status_code == 409
        assert rv.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

    def test_create_unknown_prerequisite(self, client, abc_steps):
        rv = client.post(f"{BASE}/steps", json={
            "entity_type": "order", "step_key": "step_d", "step_name": "D",
            "blocked_by_steps": ["ghost"],
        })
        assert rv.status_code == 422
        body = rv.get_json()
        assert body["code"] == "WORKFLOW_CONFIG_INVALID"
        assert body["details"]["problems"][0]["problem"] == "unknown_prerequisite"

    def test_create_without_body(self, client):
        rv = client.post(f"{BASE}/steps")
        assert rv.status_code == 400

    def test_update_into_cycle(self, client, abc_steps):
        rv = client.put(f"{BASE}/steps/{abc_steps[0].id}", json={"blocked_by_steps": ["step_c"]})
        assert rv.status_code == 422

    def test_delete_referenced(self, client, abc_steps):
        rv = client.delete(f"{BASE}/steps/{abc_steps[0].id}")
        assert rv.status_code == 422
        assert rv.get_json()["details"]["dependents"] == ["step_b"]

    def test_delete_missing(self, client):
        rv = client.delete(f"{BASE}/steps/999")
        assert rv.status_code == 404
        assert rv.get_json()["code"] == "ERR_NOT_FOUND"

    def test_seed(self, client):
        rv = client.post(f"{BASE}/steps/seed")
        assert rv.status_code == 201
        assert rv.get_json()["created"] == 33
        rv = client.post(f"{BASE}/steps/seed")
        assert rv.status_code == 200
        assert rv.get_json()["created"] == 0

    def test_seed_single_type(self, client):
        rv = client.post(f"{BASE}/steps/seed", json={"entity_type": "purchase_order"})
        assert rv.get_json()["created"] == 10

    def test_validate(self, client, seeded):
        rv = client.get(f"{BASE}/steps/validate", query_string={"entity_type": "order"})
        assert rv.status_code == 200
        body = rv.get_json()
        assert body["valid"] is True
        assert body["total_steps"] == 17


# ═════════════════════════════════════════════════════════════════════════════
# 2-3. Views and upsert
# ═════════════════════════════════════════════════════════════════════════════


class TestWorkflowView:
    def test_untouched_entity(self, client, abc_steps):
        view = _view(client)
        assert view["entity_id"] == "ord-1"
        assert view["total_steps"] == 3
        assert view["progress_percentage"] == 0
        assert view["current_step"]["step_key"] == "step_a"
        b = view["steps"][1]
        assert b["is_blocked"] is True
        assert b["blocked_by_steps"] == ["Step A"]
        assert b["prerequisites"] == ["step_a"]
        assert "phases" not in view

    def test_group_by_phase(self, client, seeded):
        view = _view(client, group="phase")
        assert [p["key"] for p in view["phases"]][:2] == ["sales", "sourcing"]
        assert sum(p["total_steps"] for p in view["phases"]) == 17

    def test_upsert_progression(self, client, abc_steps):
        expected = {"step_a": 33, "step_b": 67, "step_c": 100}
        for key, pct in expected.items():
            rv = client.put(_step_url(key), json={"status": "completed"})
            assert rv.status_code == 200
            assert rv.get_json()["workflow"]["progress_percentage"] == pct
        assert _view(client)["is_complete"] is True

    def test_upsert_skipped(self, client, abc_steps):
        rv = client.put(_step_url("step_a"), json={"status": "skipped", "notes": "n/a"})
        assert rv.get_json()["progress"]["status"] == "skipped"
        assert _view(client)["current_step"]["step_key"] == "step_b"

    def test_upsert_invalid_status(self, client, abc_steps):
        rv = client.put(_step_url("step_a"), json={"status": "in_progress"})
        assert rv.status_code == 400
        assert rv.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_raw_progress(self, client, abc_steps):
        client.put(_step_url("step_a"), json={"status": "completed", "notes": "ok"})
        rv = client.get(f"{BASE}/order/ord-1/progress")
        assert rv.status_code == 200
        body = rv.get_json()
        assert body["total"] == 1
        assert body["progress"][0]["step_key"] == "step_a"
        assert body["progress"][0]["notes"] == "ok"

    def test_unsupported_entity_type(self, client):
        rv = client.get(f"{BASE}/invoice/1")
        assert rv.status_code == 422
        assert rv.get_json()["code"] == "ERR_VALIDATION_RULE"

    def test_unknown_step_key(self, client, abc_steps):
        rv = client.put(_step_url("ghost"), json={"status": "completed"})
        assert rv.status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# 4. Dialog actions
# ═════════════════════════════════════════════════════════════════════════════


class TestDialogActions:
    def test_complete_open_step(self, client, abc_steps):
        rv = _complete(client, "step_a", notes="confirmed by phone")
        assert rv.status_code == 200
        body = rv.get_json()
        assert body["progress"]["status"] == "completed"
        assert body["progress"]["notes"] == "confirmed by phone"
        assert body["workflow"]["current_step_key"] == "step_b"

    def test_complete_blocked_step(self, client, abc_steps):
        rv = _complete(client, "step_b")
        assert rv.status_code == 409
        body = rv.get_json()
        assert body["code"] == "ERR_CONFLICT_STATE"
        assert body["details"]["blocked_by_steps"] == ["Step A"]
        assert _status(_view(client), "step_b") == "pending"

    def test_complete_twice(self, client, abc_steps):
        _complete(client, "step_a")
        assert _complete(client, "step_a").status_code == 409

    def test_skip_requires_notes(self, client, abc_steps):
        _complete(client, "step_a")
        _complete(client, "step_b")
        rv = _complete(client, "step_c", skip=True)
        assert rv.status_code == 400
        rv = _complete(client, "step_c", skip=True, notes="   ")
        assert rv.status_code == 400
        rv = _complete(client, "step_c", skip=True, notes="not needed for this order")
        assert rv.status_code == 200
        assert rv.get_json()["progress"]["status"] == "skipped"
        assert rv.get_json()["workflow"]["progress_percentage"] == 100

    def test_skip_non_skippable(self, client, abc_steps):
        rv = _complete(client, "step_a", skip=True, notes="please")
        assert rv.status_code == 409
        assert "cannot be skipped" in rv.get_json()["error"]

    def test_skip_blocked(self, client, abc_steps):
        rv = _complete(client, "step_c", skip=True, notes="please")
        assert rv.status_code == 409
        assert rv.get_json()["details"]["blocked_by_steps"] == ["Step B"]

    def test_start(self, client, abc_steps):
        rv = client.post(f"{_step_url('step_a')}/start")
        assert rv.status_code == 200
        assert rv.get_json()["progress"]["status"] == "in_progress"
        assert client.post(f"{_step_url('step_a')}/start").status_code == 409
        assert _complete(client, "step_a").status_code == 200

    def test_start_blocked(self, client, abc_steps):
        assert client.post(f"{_step_url('step_b')}/start").status_code == 409

    def test_actions_in_view(self, client, abc_steps):
        _complete(client, "step_a")
        view = _view(client)
        assert view["steps"][0]["actions"]["can_reset"] is True
        assert view["steps"][1]["actions"]["can_complete"] is True
        assert view["steps"][2]["actions"]["can_skip"] is False


# ═════════════════════════════════════════════════════════════════════════════
# 5. Reset and assignees
# ═════════════════════════════════════════════════════════════════════════════


class TestResetAndAssign:
    def test_reset_after_progress(self, client, abc_steps):
        _complete(client, "step_a")
        _complete(client, "step_b")
        rv = client.post(f"{_step_url('step_a')}/reset")
        assert rv.status_code == 200
        assert rv.get_json()["progress"]["status"] == "pending"

        view = _view(client)
        assert view["completed_steps"] == 1
        b = view["steps"][1]
        assert b["status"] == "completed"
        assert b["is_blocked"] is True

    def test_reset_untouched_step(self, client, abc_steps):
        rv = client.post(f"{_step_url('step_c')}/reset")
        assert rv.status_code == 200
        assert rv.get_json()["progress"] is None
        assert client.get(f"{BASE}/order/ord-1/progress").get_json()["total"] == 0

    def test_assignees(self, client, abc_steps):
        rv = client.put(f"{_step_url('step_b')}/assignees", json={"assigned_to": ["u1", "u2"]})
        assert rv.status_code == 200
        assert rv.get_json()["progress"]["assigned_to"] == ["u1", "u2"]
        assert rv.get_json()["progress"]["status"] == "pending"

    def test_assignees_required(self, client, abc_steps):
        rv = client.put(f"{_step_url('step_b')}/assignees", json={})
        assert rv.status_code == 400

    def test_assignees_must_be_list(self, client, abc_steps):
        rv = client.put(f"{_step_url('step_b')}/assignees", json={"assigned_to": "u1"})
        assert rv.status_code == 422


# ═════════════════════════════════════════════════════════════════════════════
# 6. Summaries
# ═════════════════════════════════════════════════════════════════════════════


class TestSummariesApi:
    def test_summaries(self, client, abc_steps):
        _complete(client, "step_a", entity_id="ord-1")
        rv = client.post(f"{BASE}/order/summaries", json={"entity_ids": ["ord-1", "ord-2"]})
        assert rv.status_code == 200
        items = rv.get_json()["items"]
        assert [(i["entity_id"], i["progress_percentage"]) for i in items] == [("ord-1", 33), ("ord-2", 0)]
        assert items[0]["current_step_name"] == "Step B"

    def test_summaries_require_list(self, client, abc_steps):
        rv = client.post(f"{BASE}/order/summaries", json={"entity_ids": "ord-1"})
        assert rv.status_code == 400


# ═════════════════════════════════════════════════════════════════════════════
# 7. Actor identity
# ═════════════════════════════════════════════════════════════════════════════


class TestActorIdentity:
    def test_bearer_token(self, client, abc_steps):
        token = encode_actor_token("user-42")
        rv = client.post(
            f"{_step_url('step_a')}/complete", json={},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert rv.get_json()["progress"]["completed_by"] == "user-42"

    def test_header_fallback(self, client, abc_steps):
        rv = client.put(_step_url("step_a"), json={"status": "completed"}, headers={"X-Actor-Id": "alice"})
        assert rv.get_json()["progress"]["completed_by"] == "alice"

    def test_invalid_token_does_not_block(self, client, abc_steps):
        rv = client.put(
            _step_url("step_a"), json={"status": "completed"},
            headers={"Authorization": "Bearer not-a-jwt", "X-Actor-Id": "bob"},
        )
        assert rv.status_code == 200
        assert rv.get_json()["progress"]["completed_by"] == "bob"

    def test_anonymous(self, client, abc_steps):
        rv = client.put(_step_url("step_a"), json={"status": "completed"})
        assert rv.get_json()["progress"]["completed_by"] is None


# ═════════════════════════════════════════════════════════════════════════════
# 8. Storage errors
# ═════════════════════════════════════════════════════════════════════════════


class TestStorageErrors:
    def test_write_failure_is_500(self, client, abc_steps):
        with patch.object(db.session, "commit", side_effect=OperationalError("COMMIT", {}, Exception("db down"))):
            rv = client.put(_step_url("step_a"), json={"status": "completed"})
        assert rv.status_code == 500
        assert rv.get_json()["code"] == "ERR_DATABASE"
        assert _view(client)["completed_steps"] == 0

    def test_read_failure_is_500(self, client, abc_steps):
        with patch("app.services.workflow_service.load_catalog",
                   side_effect=OperationalError("SELECT", {}, Exception("db down"))):
            rv = client.get(f"{BASE}/order/ord-1")
        assert rv.status_code == 500
        assert rv.get_json()["code"] == "ERR_DATABASE"


# ═════════════════════════════════════════════════════════════════════════════
# 9. Health + headers
# ═════════════════════════════════════════════════════════════════════════════


class TestHealth:
    def test_health(self, client):
        assert client.get("/api/v1/health").get_json()["status"] == "ok"
        assert client.get("/api/v1/health/ready").status_code == 200

    def test_live(self, client):
        rv = client.get("/api/v1/health/live")
        assert rv.status_code == 200
        checks = rv.get_json()["checks"]
        assert checks["database"]["status"] == "ok"
        assert checks["workflow_tables"]["status"] == "ok"
        assert checks["cache"]["backend"] == "memory"

    def test_request_headers(self, client, abc_steps):
        rv = client.get(f"{BASE}/order/ord-1", headers={"X-Request-ID": "req-123"})
        assert rv.headers["X-Request-ID"] == "req-123"
        assert float(rv.headers["X-Request-Duration-Ms"]) >= 0

    def test_unknown_route(self, client):
        rv = client.get("/api/v1/nothing-here")
        assert rv.status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# 10. CLI commands
# ═════════════════════════════════════════════════════════════════════════════


class TestCli:
    def test_seed_is_idempotent(self, app):
        runner = app.test_cli_runner()
        first = runner.invoke(args=["seed-workflow-steps"])
        assert first.exit_code == 0
        assert "Seeded 33 new workflow step(s)." in first.output
        second = runner.invoke(args=["seed-workflow-steps"])
        assert "Seeded 0 new workflow step(s)." in second.output

    def test_seed_single_entity_type(self, app):
        result = app.test_cli_runner().invoke(args=["seed-workflow-steps", "--entity-type", "sourcing"])
        assert "Seeded 6 new workflow step(s)." in result.output

    def test_validate_ok(self, app, seeded):
        result = app.test_cli_runner().invoke(args=["validate-workflow-steps"])
        assert result.exit_code == 0
        assert "order: 17 steps, ok" in result.output

    def test_validate_reports_unknown_prerequisite(self, app):
        db.session.add(WorkflowStep(
            entity_type="order", step_key="step_x", step_name="Step X", step_order=1,
            blocked_by_steps=["ghost"], responsible_roles=[],
        ))
        db.session.commit()
        result = app.test_cli_runner().invoke(args=["validate-workflow-steps"])
        assert result.exit_code == 1
        assert "order: 1 steps, INVALID" in result.output
        assert "[unknown_prerequisite]" in result.output
