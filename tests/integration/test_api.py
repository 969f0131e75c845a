"""Integration tests for caverna.api.main - FastAPI REST API endpoints.

All tests use the FastAPI TestClient with an orchestrator backed by a
temporary SQLite store, a temporary gallery and a :class:`FakeProvider`, so
no real model loading or GPU access occurs.  Tests cover every endpoint:

- ``GET /health`` - Liveness.
- ``GET /api/options`` and ``/api/options/compatible`` - Catalog data.
- ``POST /api/validate`` - Selection validation.
- ``POST /api/prompt/compile`` - Prompt preview.
- ``POST /api/generate`` and ``GET /api/status/{id}`` - Job lifecycle.
- ``GET /api/jobs`` - Per-user listing.
- ``POST /api/jobs/{id}/retry`` and ``DELETE /api/jobs/{id}`` - Job management.
- ``POST /api/admin/cleanup`` and ``/api/admin/watchdog`` - Maintenance.
- ``/api/admin/providers`` - Provider health, circuit reset and enabling.
- ``GET /api/stats`` - Aggregate counts.
"""

from __future__ import annotations

import threading

from caverna.providers.base import ProviderResult

VALID = {
    "pose": "arms-crossed",
    "outfit": "hoodie-sweatpants",
    "footwear": "air-jordan-1-chicago",
}

INCOMPATIBLE = {**VALID, "outfit": "tshirt-shorts"}

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


def _generate_and_wait(client, payload=VALID, headers=ALICE) -> dict:
    """Submit a job, wait for its dispatch, and return its status body."""
    resp = client.post("/api/generate", json=payload, headers=headers)
    assert resp.status_code == 202
    job_id = resp.json()["job_id"]
    client.app.state.orchestrator.wait(job_id, timeout=10)
    return client.get(f"/api/status/{job_id}").json()


# ---------------------------------------------------------------------------
# Health and catalog.
# ---------------------------------------------------------------------------


class TestHealth:
    def test_health(self, test_client):
        resp = test_client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert "version" in resp.json()


class TestOptions:
    """Test GET /api/options and /api/options/compatible."""

    def test_options_lists_all_categories(self, test_client):
        resp = test_client.get("/api/options")
        assert resp.status_code == 200
        data = resp.json()
        for key in ("poses", "outfits", "footwear", "props", "frames"):
            assert len(data[key]) > 0

    def test_options_include_compatibility(self, test_client):
        poses = {pose["id"]: pose for pose in test_client.get("/api/options").json()["poses"]}
        assert poses["arms-crossed"]["compatible_outfits"] == ["hoodie-sweatpants", "windbreaker-shorts"]

    def test_compatible_for_pose(self, test_client):
        resp = test_client.get("/api/options/compatible", params={"pose": "arms-crossed"})
        assert resp.status_code == 200
        outfits = [outfit["id"] for outfit in resp.json()["outfits"]]
        assert "tshirt-shorts" not in outfits

    def test_compatible_for_frame_type(self, test_client):
        resp = test_client.get("/api/options/compatible", params={"frameType": "onboarding"})
        assert [frame["id"] for frame in resp.json()["frames"]] == ["01A", "02B"]


# ---------------------------------------------------------------------------
# Validation and prompt preview.
# ---------------------------------------------------------------------------


class TestValidate:
    """Test POST /api/validate."""

    def test_valid_selection(self, test_client):
        resp = test_client.post("/api/validate", json=VALID)
        assert resp.status_code == 200
        assert resp.json() == {"is_valid": True, "errors": [], "warnings": [], "suggestions": []}

    def test_invalid_selection_is_still_200(self, test_client):
        resp = test_client.post("/api/validate", json=INCOMPATIBLE)
        assert resp.status_code == 200
        data = resp.json()
        assert data["is_valid"] is False
        assert data["errors"] == ["outfit incompatible with pose"]
        assert "hoodie-sweatpants" in data["suggestions"]

    def test_camel_case_frame_fields(self, test_client):
        payload = {**VALID, "frameType": "onboarding"}
        data = test_client.post("/api/validate", json=payload).json()
        assert data["errors"] == ["frame_id is required for onboarding frames"]

    def test_unknown_frame_type_is_422(self, test_client):
        resp = test_client.post("/api/validate", json={**VALID, "frameType": "panorama"})
        assert resp.status_code == 422


class TestCompilePrompt:
    """Test POST /api/prompt/compile."""

    def test_compile(self, test_client):
        resp = test_client.post("/api/prompt/compile", json=VALID)
        assert resp.status_code == 200
        data = resp.json()
        assert data["positive_prompt"].startswith("CAPITAO CAVERNA CHARACTER FOUNDATION")
        assert len(data["fingerprint"]) == 64
        assert data["compiled_prompt"].endswith(f"NEGATIVE PROMPT: {data['negative_prompt']}")

    def test_compile_is_deterministic(self, test_client):
        first = test_client.post("/api/prompt/compile", json=VALID).json()
        second = test_client.post("/api/prompt/compile", json=dict(reversed(list(VALID.items())))).json()
        assert first == second

    def test_compile_invalid_is_400(self, test_client):
        resp = test_client.post("/api/prompt/compile", json=INCOMPATIBLE)
        assert resp.status_code == 400
        detail = resp.json()["detail"]
        assert detail["errors"] == ["outfit incompatible with pose"]
        assert detail["message"] == "outfit incompatible with pose"


# ---------------------------------------------------------------------------
# Generation lifecycle.
# ---------------------------------------------------------------------------


class TestGenerate:
    """Test POST /api/generate and GET /api/status/{id}."""

    def test_generate_returns_pending_job(self, test_client, api_provider):
        api_provider.gate = threading.Event()
        resp = test_client.post("/api/generate", json=VALID, headers=ALICE)
        assert resp.status_code == 202
        assert resp.json()["status"] == "PENDING"

        status = test_client.get(f"/api/status/{resp.json()['job_id']}").json()
        assert status["status"] == "PENDING"
        assert status["public_url"] is None

    def test_generate_completes(self, test_client):
        status = _generate_and_wait(test_client)
        assert status["status"] == "COMPLETE"
        assert status["public_url"].startswith("/static/gallery/")
        assert status["service_used"] == "fake"
        assert status["error_message"] is None

    def test_stored_image_is_served(self, test_client):
        status = _generate_and_wait(test_client)
        resp = test_client.get(status["public_url"])
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/png"

    def test_generate_invalid_is_400(self, test_client):
        resp = test_client.post("/api/generate", json=INCOMPATIBLE, headers=ALICE)
        assert resp.status_code == 400
        assert test_client.get("/api/jobs", headers=ALICE).json()["jobs"] == []

    def test_missing_field_is_400(self, test_client):
        resp = test_client.post("/api/generate", json={"pose": "arms-crossed"}, headers=ALICE)
        assert resp.status_code == 400
        assert "missing required parameter: outfit" in resp.json()["detail"]["errors"]

    def test_duplicate_request_coalesced(self, test_client, api_provider):
        api_provider.gate = threading.Event()
        first = test_client.post("/api/generate", json=VALID, headers=ALICE).json()
        second = test_client.post("/api/generate", json=VALID, headers=ALICE).json()
        other = test_client.post("/api/generate", json=VALID, headers=BOB).json()
        assert first["job_id"] == second["job_id"]
        assert other["job_id"] != first["job_id"]

    def test_provider_failure(self, test_client, api_provider):
        api_provider.results = [ProviderResult.failed("content policy", retryable=False)]
        status = _generate_and_wait(test_client)
        assert status["status"] == "FAILED"
        assert status["error_message"] == "fake: content policy"
        assert status["public_url"] is None

    def test_unknown_job_is_404(self, test_client):
        assert test_client.get("/api/status/does-not-exist").status_code == 404


class TestJobs:
    """Test GET /api/jobs, retry and delete."""

    def test_list_is_per_user(self, test_client):
        _generate_and_wait(test_client, headers=ALICE)
        _generate_and_wait(test_client, headers=BOB)

        data = test_client.get("/api/jobs", headers=ALICE).json()
        assert len(data["jobs"]) == 1
        assert data["limit"] == 50
        assert data["offset"] == 0

    def test_list_status_filter(self, test_client):
        _generate_and_wait(test_client)
        assert test_client.get("/api/jobs", params={"status": "FAILED"}, headers=ALICE).json()["jobs"] == []
        assert len(test_client.get("/api/jobs", params={"status": "COMPLETE"}, headers=ALICE).json()["jobs"]) == 1

    def test_list_bad_limit_is_422(self, test_client):
        assert test_client.get("/api/jobs", params={"limit": 0}).status_code == 422

    def test_anonymous_owner(self, test_client):
        _generate_and_wait(test_client, headers={})
        assert len(test_client.get("/api/jobs").json()["jobs"]) == 1

    def test_retry_failed_job(self, test_client, api_provider):
        api_provider.results = [ProviderResult.failed("down", retryable=False)]
        failed = _generate_and_wait(test_client)

        resp = test_client.post(f"/api/jobs/{failed['job_id']}/retry")
        assert resp.status_code == 200
        assert resp.json()["attempts"] == 2

        test_client.app.state.orchestrator.wait(failed["job_id"], timeout=10)
        status = test_client.get(f"/api/status/{failed['job_id']}").json()
        assert status["status"] == "COMPLETE"

    def test_retry_complete_is_409(self, test_client):
        complete = _generate_and_wait(test_client)
        assert test_client.post(f"/api/jobs/{complete['job_id']}/retry").status_code == 409

    def test_retry_unknown_is_404(self, test_client):
        assert test_client.post("/api/jobs/nope/retry").status_code == 404

    def test_delete_job(self, test_client):
        complete = _generate_and_wait(test_client)
        resp = test_client.delete(f"/api/jobs/{complete['job_id']}")
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "job_id": complete["job_id"]}
        assert test_client.get(f"/api/status/{complete['job_id']}").status_code == 404
        assert test_client.get(complete["public_url"]).status_code == 404

    def test_delete_unknown_is_404(self, test_client):
        assert test_client.delete("/api/jobs/nope").status_code == 404


# ---------------------------------------------------------------------------
# Admin and stats.
# ---------------------------------------------------------------------------


class TestAdmin:
    """Test the cleanup and watchdog endpoints."""

    def test_cleanup(self, test_client, clock):
        complete = _generate_and_wait(test_client)
        clock.advance(days=2)

        resp = test_client.post("/api/admin/cleanup", json={"olderThanDays": 1})
        assert resp.status_code == 200
        assert resp.json() == {"deleted": 1}
        assert test_client.get(f"/api/status/{complete['job_id']}").status_code == 404

    def test_cleanup_pending_is_400(self, test_client):
        resp = test_client.post("/api/admin/cleanup", json={"olderThanDays": 1, "status": "PENDING"})
        assert resp.status_code == 400

    def test_cleanup_negative_is_422(self, test_client):
        assert test_client.post("/api/admin/cleanup", json={"olderThanDays": -1}).status_code == 422

    def test_watchdog(self, test_client, api_provider, clock):
        api_provider.gate = threading.Event()
        job_id = test_client.post("/api/generate", json=VALID, headers=ALICE).json()["job_id"]
        clock.advance(seconds=901)

        resp = test_client.post("/api/admin/watchdog")
        assert resp.status_code == 200
        assert resp.json() == {"expired": [job_id]}

        status = test_client.get(f"/api/status/{job_id}").json()
        assert status["status"] == "FAILED"
        assert "timed out" in status["error_message"]

    def test_status_poll_expires_stale_job(self, test_client, api_provider, clock):
        api_provider.gate = threading.Event()
        job_id = test_client.post("/api/generate", json=VALID, headers=ALICE).json()["job_id"]
        clock.advance(seconds=901)
        assert test_client.get(f"/api/status/{job_id}").json()["status"] == "FAILED"


class TestProviderAdmin:
    """Test the provider health endpoints."""

    def test_list_provider_health(self, test_client):
        _generate_and_wait(test_client)
        resp = test_client.get("/api/admin/providers")
        assert resp.status_code == 200
        [entry] = resp.json()
        assert entry["name"] == "fake"
        assert entry["enabled"] is True
        assert entry["successful_calls"] == 1
        assert entry["circuit"]["state"] == "CLOSED"

    def test_reset_circuit(self, test_client):
        resp = test_client.post("/api/admin/providers/fake/reset")
        assert resp.status_code == 200
        assert resp.json()["circuit"]["state"] == "CLOSED"

    def test_reset_unknown_is_404(self, test_client):
        assert test_client.post("/api/admin/providers/nope/reset").status_code == 404

    def test_disable_provider(self, test_client):
        resp = test_client.post("/api/admin/providers/fake/enabled", json={"enabled": False})
        assert resp.status_code == 200
        assert resp.json()["enabled"] is False

        status = _generate_and_wait(test_client)
        assert status["status"] == "FAILED"
        assert status["error_message"] == "fake: disabled"

    def test_enable_unknown_is_404(self, test_client):
        resp = test_client.post("/api/admin/providers/nope/enabled", json={"enabled": True})
        assert resp.status_code == 404

    def test_enable_requires_flag(self, test_client):
        assert test_client.post("/api/admin/providers/fake/enabled", json={}).status_code == 422


class TestStats:
    def test_stats(self, test_client):
        _generate_and_wait(test_client)
        data = test_client.get("/api/stats").json()
        assert data["total"] == 1
        assert data["by_status"]["COMPLETE"] == 1
        assert data["providers"] == ["fake"]
        assert data["provider_health"][0]["name"] == "fake"
        assert data["prompt_cache"]["entries"] == 1
