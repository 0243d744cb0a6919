"""Integration tests for photoforge.api.main — FastAPI REST API endpoints.

All tests use the FastAPI TestClient against a temporary SQLite database with
a fake provider injected, so no network access occurs.  Tests cover every
endpoint:

- ``GET /health`` and ``GET /api/config`` — service information.
- ``GET /api/generate/presets`` — preset catalogue by tier.
- ``POST /api/generate/image-to-image`` — the generation lifecycle.
- ``GET /api/generate/status/{id}`` and ``POST /api/generate/retry/{id}``.
- ``GET /api/user/quota`` and ``GET /api/user/quota/history``.
- ``GET/DELETE /api/user/generations[/{id}]`` — gallery.
- ``GET /api/user/stats``.
- ``GET /api/user/tier-info``, ``POST /api/user/upgrade`` and the admin user routes.
- ``/api/prompts/*`` — catalogue summaries, reload and preset matching.
"""

from __future__ import annotations

import pytest

from photoforge.core.errors import ProviderError
from photoforge.core.quota import QuotaLedger


def _headers(user) -> dict:
    return {"X-User-Id": user.id}


def _post_generation(client, user, image: bytes, **form):
    data = {"prompt": "make it a watercolour", **form}
    return client.post(
        "/api/generate/image-to-image",
        data=data,
        files={"image": ("photo.jpg", image, "image/jpeg")},
        headers=_headers(user),
    )


@pytest.fixture
def live_ledger(quota_store, test_config) -> QuotaLedger:
    """Ledger on the wall clock, matching the one built by the app."""
    return QuotaLedger(quota_store, test_config)


# ---------------------------------------------------------------------------
# Service information.
# ---------------------------------------------------------------------------


class TestServiceInfo:
    def test_health(self, test_client):
        resp = test_client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_config(self, test_client):
        data = test_client.get("/api/config").json()
        assert data["tiers"]["free"]["daily_limit"] == 5
        assert data["tiers"]["paid"]["daily_limit"] == 50
        assert data["provider"]["name"] == "Fake"
        assert "image/png" in data["uploads"]["allowed_mime_types"]
        assert data["sizes"]["default"] == "1024x1024"


# ---------------------------------------------------------------------------
# Identity.
# ---------------------------------------------------------------------------


class TestIdentity:
    def test_missing_header(self, test_client):
        resp = test_client.get("/api/user/quota")
        assert resp.status_code == 401
        assert resp.json() == {
            "success": False,
            "error": "Authentication required",
            "code": "unauthorized",
        }

    def test_unknown_user(self, test_client):
        resp = test_client.get("/api/user/quota", headers={"X-User-Id": "ghost"})
        assert resp.status_code == 404
        assert resp.json()["code"] == "not_found"


# ---------------------------------------------------------------------------
# Generation endpoint.
# ---------------------------------------------------------------------------


class TestGenerate:
    """POST /api/generate/image-to-image."""

    def test_success(self, test_client, free_user, image_bytes):
        resp = _post_generation(test_client, free_user, image_bytes)

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["status"] == "completed"
        assert data["is_placeholder"] is False
        assert data["quota"]["used"] == 1
        assert data["quota"]["limit"] == 5
        assert data["quota"]["remaining"] == 4
        assert data["generation"]["original_image_url"].startswith("/uploads/")

    def test_generated_image_is_served(self, test_client, free_user, image_bytes):
        data = _post_generation(test_client, free_user, image_bytes).json()
        image = test_client.get(data["image_ref"])
        assert image.status_code == 200
        assert image.headers["content-type"] == "image/png"

    def test_with_preset_and_size(self, test_client, free_user, image_bytes, fake_provider):
        resp = _post_generation(
            test_client, free_user, image_bytes, preset="modern-architecture", size="512x512"
        )
        assert resp.status_code == 200
        assert resp.json()["generation"]["preset_used"] == "Modern Architecture"
        assert fake_provider.calls[0]["width"] == 512

    def test_missing_prompt(self, test_client, free_user, image_bytes):
        resp = test_client.post(
            "/api/generate/image-to-image",
            files={"image": ("photo.jpg", image_bytes, "image/jpeg")},
            headers=_headers(free_user),
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"

    def test_missing_image(self, test_client, free_user):
        resp = test_client.post(
            "/api/generate/image-to-image",
            data={"prompt": "p"},
            headers=_headers(free_user),
        )
        assert resp.status_code == 400
        assert "Image file is required" in resp.json()["error"]

    def test_wrong_file_type(self, test_client, free_user):
        resp = test_client.post(
            "/api/generate/image-to-image",
            data={"prompt": "p"},
            files={"image": ("notes.txt", b"hello", "text/plain")},
            headers=_headers(free_user),
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_file"

    def test_bad_size(self, test_client, free_user, image_bytes):
        resp = _post_generation(test_client, free_user, image_bytes, size="big")
        assert resp.status_code == 400

    def test_quota_exceeded(self, test_client, free_user, image_bytes, live_ledger, fake_provider):
        for _ in range(5):
            live_ledger.increment_usage(free_user.id, free_user.tier)

        resp = _post_generation(test_client, free_user, image_bytes)

        assert resp.status_code == 429
        body = resp.json()
        assert body["code"] == "quota_exceeded"
        assert body["quota"]["used"] == 5
        assert fake_provider.calls == []

    def test_safety_rejection(self, test_client, free_user, image_bytes, fake_provider):
        fake_provider.error = ProviderError("safety")
        resp = _post_generation(test_client, free_user, image_bytes)
        assert resp.status_code == 422
        assert resp.json()["code"] == "provider_safety"

    def test_transient_failure_returns_placeholder(
        self, test_client, free_user, image_bytes, fake_provider, transient_error
    ):
        fake_provider.error = transient_error
        resp = _post_generation(test_client, free_user, image_bytes)
        assert resp.status_code == 200
        assert resp.json()["is_placeholder"] is True
        assert resp.json()["quota"]["used"] == 1

    def test_echo_rejected(self, test_client, free_user, image_bytes, fake_provider):
        from photoforge.core.providers.base import ProviderResult

        fake_provider.handler = lambda prompt, data: ProviderResult(image_bytes=data)
        resp = _post_generation(test_client, free_user, image_bytes)
        assert resp.status_code == 502
        assert resp.json()["code"] == "echoed_output"

    def test_unexpected_error_is_generic_500(self, test_config, fake_provider, free_user, image_bytes):
        from fastapi.testclient import TestClient

        from photoforge.api.main import create_app

        fake_provider.error = RuntimeError("secret internals")
        app = create_app(test_config, provider=fake_provider)
        with TestClient(app, raise_server_exceptions=False) as client:
            resp = _post_generation(client, free_user, image_bytes)
        assert resp.status_code == 500
        assert "secret" not in resp.text
        assert resp.json()["code"] == "internal_error"

    def test_no_provider_is_503(self, test_config, free_user, image_bytes):
        from fastapi.testclient import TestClient

        from photoforge.api.main import create_app

        with TestClient(create_app(test_config, provider=None)) as client:
            resp = _post_generation(client, free_user, image_bytes)
            quota = client.get("/api/user/quota", headers=_headers(free_user)).json()
        assert resp.status_code == 503
        assert resp.json()["code"] == "provider_unavailable"
        assert quota["quota"]["used"] == 0


# ---------------------------------------------------------------------------
# Status and retry.
# ---------------------------------------------------------------------------


class TestStatusAndRetry:
    def test_status(self, test_client, free_user, image_bytes):
        generation_id = _post_generation(test_client, free_user, image_bytes).json()["generation_id"]
        resp = test_client.get(f"/api/generate/status/{generation_id}", headers=_headers(free_user))
        assert resp.status_code == 200
        assert resp.json()["generation"]["status"] == "completed"

    def test_status_of_other_user(self, test_client, free_user, paid_user, image_bytes):
        generation_id = _post_generation(test_client, free_user, image_bytes).json()["generation_id"]
        resp = test_client.get(f"/api/generate/status/{generation_id}", headers=_headers(paid_user))
        assert resp.status_code == 404

    def test_retry_failed(self, test_client, free_user, image_bytes, fake_provider):
        fake_provider.error = ProviderError("auth")
        _post_generation(test_client, free_user, image_bytes)
        listing = test_client.get(
            "/api/user/generations", params={"status": "failed"}, headers=_headers(free_user)
        ).json()
        generation_id = listing["generations"][0]["id"]

        fake_provider.error = None
        resp = test_client.post(f"/api/generate/retry/{generation_id}", headers=_headers(free_user))

        assert resp.status_code == 200
        assert resp.json()["generation_id"] == generation_id
        assert resp.json()["status"] == "completed"

    def test_retry_completed_rejected(self, test_client, free_user, image_bytes):
        generation_id = _post_generation(test_client, free_user, image_bytes).json()["generation_id"]
        resp = test_client.post(f"/api/generate/retry/{generation_id}", headers=_headers(free_user))
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_transition"


# ---------------------------------------------------------------------------
# Quota, gallery and stats.
# ---------------------------------------------------------------------------


class TestUserEndpoints:
    def test_quota(self, test_client, paid_user):
        data = test_client.get("/api/user/quota", headers=_headers(paid_user)).json()
        assert data["tier"] == "paid"
        assert data["quota"]["limit"] == 50
        assert data["quota"]["remaining"] == 50
        assert data["quota"]["status"] == "normal"

    def test_quota_warning_status(self, test_client, free_user, live_ledger):
        for _ in range(4):
            live_ledger.increment_usage(free_user.id, free_user.tier)
        data = test_client.get("/api/user/quota", headers=_headers(free_user)).json()
        assert data["quota"]["status"] == "warning"
        assert data["quota"]["usage_percentage"] == 80

    def test_quota_history(self, test_client, free_user, image_bytes):
        _post_generation(test_client, free_user, image_bytes)
        data = test_client.get(
            "/api/user/quota/history", params={"days": 7}, headers=_headers(free_user)
        ).json()
        assert data["days"] == 7
        assert data["history"][0]["used"] == 1

    def test_quota_history_days_bounds(self, test_client, free_user):
        resp = test_client.get(
            "/api/user/quota/history", params={"days": 0}, headers=_headers(free_user)
        )
        assert resp.status_code == 400

    def test_list_generations(self, test_client, free_user, image_bytes):
        for _ in range(3):
            _post_generation(test_client, free_user, image_bytes)
        data = test_client.get(
            "/api/user/generations", params={"per_page": 2}, headers=_headers(free_user)
        ).json()
        assert data["total"] == 3
        assert data["pages"] == 2
        assert len(data["generations"]) == 2
        assert data["has_next"] is True

    def test_list_generations_invalid_sort(self, test_client, free_user):
        resp = test_client.get(
            "/api/user/generations", params={"sort": "random"}, headers=_headers(free_user)
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"

    def test_get_and_delete_generation(self, test_client, free_user, image_bytes):
        generation_id = _post_generation(test_client, free_user, image_bytes).json()["generation_id"]
        path = f"/api/user/generations/{generation_id}"

        assert test_client.get(path, headers=_headers(free_user)).status_code == 200
        resp = test_client.delete(path, headers=_headers(free_user))
        assert resp.json() == {"success": True, "deleted": generation_id}
        assert test_client.get(path, headers=_headers(free_user)).status_code == 404
        assert test_client.delete(path, headers=_headers(free_user)).status_code == 404

    def test_stats(self, test_client, free_user, image_bytes, fake_provider):
        _post_generation(test_client, free_user, image_bytes)
        fake_provider.error = ProviderError("safety")
        _post_generation(test_client, free_user, image_bytes)

        data = test_client.get("/api/user/stats", headers=_headers(free_user)).json()

        assert data["generations"]["total"] == 2
        assert data["generations"]["by_status"]["completed"]["count"] == 1
        assert data["generations"]["by_status"]["failed"]["count"] == 1
        assert data["quota"]["used"] == 1

    def test_presets(self, test_client, free_user):
        data = test_client.get("/api/generate/presets", headers=_headers(free_user)).json()
        assert data["user_tier"] == "free"
        assert data["source"] == "fallback"
        assert {p["id"] for p in data["presets"]} >= {"realistic-portrait", "artistic-landscape"}


# ---------------------------------------------------------------------------
# Account tier and admin routes.
# ---------------------------------------------------------------------------


@pytest.fixture
def admin(paid_user, test_config):
    test_config.admin_user_ids = [paid_user.id]
    return paid_user


class TestAccountEndpoints:
    def test_tier_info(self, test_client, free_user):
        data = test_client.get("/api/user/tier-info", headers=_headers(free_user)).json()
        assert data["current_tier"] == "free"
        assert data["current_limit"] == 5
        assert data["tiers"]["paid"]["daily_limit"] == 50
        assert data["tiers"]["paid"]["name"] == "Pro"

    def test_upgrade(self, test_client, free_user, image_bytes):
        _post_generation(test_client, free_user, image_bytes)

        resp = test_client.post("/api/user/upgrade", headers=_headers(free_user))

        assert resp.status_code == 200
        data = resp.json()
        assert data["user"]["tier"] == "paid"
        assert data["quota"]["limit"] == 50
        assert data["quota"]["used"] == 1

    def test_upgrade_twice(self, test_client, paid_user):
        resp = test_client.post("/api/user/upgrade", headers=_headers(paid_user))
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_transition"

    def test_admin_set_tier(self, test_client, admin, free_user):
        resp = test_client.put(
            f"/api/user/admin/users/{free_user.id}/tier",
            json={"tier": "paid"},
            headers=_headers(admin),
        )
        assert resp.status_code == 200
        assert resp.json()["user"]["tier"] == "paid"
        assert resp.json()["quota"]["limit"] == 50

    def test_admin_set_tier_invalid(self, test_client, admin, free_user):
        resp = test_client.put(
            f"/api/user/admin/users/{free_user.id}/tier",
            json={"tier": "gold"},
            headers=_headers(admin),
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"

    def test_admin_unknown_target(self, test_client, admin):
        resp = test_client.put(
            "/api/user/admin/users/ghost/status",
            json={"is_active": False},
            headers=_headers(admin),
        )
        assert resp.status_code == 404

    def test_non_admin_forbidden(self, test_client, free_user):
        resp = test_client.put(
            f"/api/user/admin/users/{free_user.id}/tier",
            json={"tier": "paid"},
            headers=_headers(free_user),
        )
        assert resp.status_code == 403
        assert resp.json()["code"] == "forbidden"
        quota = test_client.get("/api/user/quota", headers=_headers(free_user)).json()
        assert quota["tier"] == "free"

    def test_deactivated_user_is_unknown(self, test_client, admin, free_user):
        resp = test_client.put(
            f"/api/user/admin/users/{free_user.id}/status",
            json={"is_active": False},
            headers=_headers(admin),
        )
        assert resp.status_code == 200
        assert resp.json()["user"]["is_active"] is False
        assert test_client.get("/api/user/quota", headers=_headers(free_user)).status_code == 404


# ---------------------------------------------------------------------------
# Preset catalogue routes.
# ---------------------------------------------------------------------------


class TestPromptEndpoints:
    def test_categories_and_styles(self, test_client, free_user):
        categories = test_client.get("/api/prompts/categories", headers=_headers(free_user)).json()
        styles = test_client.get("/api/prompts/styles", headers=_headers(free_user)).json()
        assert categories["items"] == sorted(categories["items"])
        assert categories["count"] == len(categories["items"]) > 0
        assert styles["count"] == len(styles["items"]) > 0

    def test_stats(self, test_client, free_user):
        data = test_client.get("/api/prompts/stats", headers=_headers(free_user)).json()
        assert data["total"] == 3
        assert data["source"] == "fallback"
        assert sum(data["category_counts"].values()) == 3

    def test_reload_requires_admin(self, test_client, free_user, admin):
        assert test_client.post("/api/prompts/reload", headers=_headers(free_user)).status_code == 403
        resp = test_client.post("/api/prompts/reload", headers=_headers(admin))
        assert resp.status_code == 200
        assert resp.json()["total"] == 3

    def test_match(self, test_client, free_user):
        resp = test_client.post(
            "/api/prompts/match", json={"user_input": "sunset"}, headers=_headers(free_user)
        )
        data = resp.json()
        assert resp.status_code == 200
        assert data["count"] == 1
        assert data["matches"][0]["id"] == "artistic-landscape"
        assert data["matches"][0]["match_score"] > 0

    def test_match_limit_bounds(self, test_client, free_user):
        resp = test_client.post(
            "/api/prompts/match",
            json={"user_input": "portrait", "limit": 0},
            headers=_headers(free_user),
        )
        assert resp.status_code == 400

    def test_match_blank_input(self, test_client, free_user):
        resp = test_client.post(
            "/api/prompts/match", json={"user_input": "  "}, headers=_headers(free_user)
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "User input is required"

    def test_best_match(self, test_client, free_user):
        resp = test_client.post(
            "/api/prompts/best-match", json={"user_input": "portrait"}, headers=_headers(free_user)
        )
        assert resp.json()["match"]["id"] == "realistic-portrait"

    def test_best_match_none(self, test_client, free_user):
        resp = test_client.post(
            "/api/prompts/best-match", json={"user_input": "zzz"}, headers=_headers(free_user)
        )
        assert resp.status_code == 200
        assert resp.json()["match"] is None
