"""Tests for the gateway routes over an in-memory store."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

import src.api.middleware as middleware
from src.api.deps import get_billing, get_generator, get_store
from src.api.main import create_app
from src.api.middleware import create_jwt
from src.core.exceptions import GenerationError
from src.core.types import CheckoutSession, GenerationResult, SubscriptionStatus
from src.data.memory_store import InMemoryStore
from src.saas.tokens import JWTManager

ADMIN = {"X-Admin-Secret": "admin-secret"}


class FakeGenerator:
    def __init__(self) -> None:
        self.calls = 0
        self.fail = False

    async def generate(self, prompt: str) -> GenerationResult:
        self.calls += 1
        if self.fail:
            raise GenerationError("upstream timeout")
        return GenerationResult(text=f"alt text for {prompt}")


class FakeBilling:
    def __init__(self) -> None:
        self.subscription = SubscriptionStatus()
        self.session = CheckoutSession(
            session_id="cs_1", paid=True, email="buyer@example.com", credits=5
        )

    async def get_subscription_status(self, email: str) -> SubscriptionStatus:
        return self.subscription

    async def retrieve_checkout(self, session_id: str) -> CheckoutSession:
        return self.session


@dataclass
class Gateway:
    client: TestClient
    store: InMemoryStore
    generator: FakeGenerator
    billing: FakeBilling

    def bearer(self, email: str) -> dict[str, str]:
        user = asyncio.run(self.store.get_or_create_user(email))
        return {"Authorization": f"Bearer {create_jwt(user)}"}

    def new_license(self, plan: str = "agency", max_sites: int = 1,
                    email: str | None = "owner@example.com") -> str:
        response = self.client.post(
            "/api/license/generate",
            json={"name": "Acme", "plan": plan, "maxSites": max_sites, "email": email},
            headers=ADMIN,
        )
        assert response.status_code == 200, response.text
        return response.json()["license"]["licenseKey"]


@pytest.fixture()
def gw():
    store = InMemoryStore()
    generator = FakeGenerator()
    billing = FakeBilling()
    admin_settings = MagicMock()
    admin_settings.admin_secret.get_secret_value.return_value = "admin-secret"

    app = create_app()
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_generator] = lambda: generator
    app.dependency_overrides[get_billing] = lambda: billing
    middleware._jwt_manager = JWTManager(secret="route-test-secret")
    with patch("src.api.middleware.get_settings", return_value=admin_settings):
        yield Gateway(TestClient(app), store, generator, billing)
    middleware._jwt_manager = None


class TestGenerate:
    def test_site_hash_generation_charges_tokens(self, gw: Gateway) -> None:
        response = gw.client.post(
            "/api/generate",
            json={"prompt": "a cat", "siteHash": "h1", "siteUrl": "https://blog.example"},
        )
        assert response.status_code == 200, response.text
        data = response.json()
        assert data["text"] == "alt text for a cat"
        assert data["charge"] == "tokens"
        assert data["usage"]["remaining"] == 49
        assert data["usage"]["limit"] == 50
        assert "resetTimestamp" in data["usage"]

    def test_site_hash_in_header(self, gw: Gateway) -> None:
        response = gw.client.post(
            "/api/generate", json={"prompt": "a dog"}, headers={"X-Site-Hash": "h2"}
        )
        assert response.status_code == 200
        assert len(gw.store.usage_logs) == 1

    def test_wp_user_recorded(self, gw: Gateway) -> None:
        gw.client.post(
            "/api/generate",
            json={"prompt": "x"},
            headers={"X-Site-Hash": "h1", "X-WP-User-Id": "12", "X-WP-User-Name": "editor"},
        )
        log = gw.store.usage_logs[0]
        assert log.wp_user_id == "12"
        assert log.wp_user_name == "editor"

    def test_no_credentials(self, gw: Gateway) -> None:
        response = gw.client.post("/api/generate", json={"prompt": "x"})
        assert response.status_code == 401
        assert response.json()["code"] == "MISSING_AUTH"
        assert response.json()["success"] is False

    def test_bad_token(self, gw: Gateway) -> None:
        response = gw.client.post(
            "/api/generate", json={"prompt": "x"}, headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_TOKEN"

    def test_exhausted_quota_skips_generation(self, gw: Gateway) -> None:
        for _ in range(50):
            assert gw.client.post(
                "/api/generate", json={"prompt": "x"}, headers={"X-Site-Hash": "h1"}
            ).status_code == 200

        response = gw.client.post(
            "/api/generate", json={"prompt": "x"}, headers={"X-Site-Hash": "h1"}
        )
        assert response.status_code == 403
        assert response.json()["code"] == "QUOTA_EXHAUSTED"
        assert gw.generator.calls == 50

    def test_generation_failure_charges_nothing(self, gw: Gateway) -> None:
        gw.generator.fail = True
        response = gw.client.post(
            "/api/generate", json={"prompt": "x"}, headers={"X-Site-Hash": "h1"}
        )
        assert response.status_code == 502
        assert response.json()["code"] == "GENERATION_ERROR"
        site = asyncio.run(gw.store.get_site("h1"))
        assert site is not None
        assert site.tokens_used == 0
        assert gw.store.usage_logs == []

    def test_subscriber_generates_without_bucket(self, gw: Gateway) -> None:
        gw.billing.subscription = SubscriptionStatus(plan="pro", status="active")
        response = gw.client.post(
            "/api/generate", json={"prompt": "x"}, headers=gw.bearer("sub@example.com")
        )
        assert response.status_code == 200
        assert response.json()["charge"] == "subscription"

    def test_empty_prompt_rejected(self, gw: Gateway) -> None:
        response = gw.client.post(
            "/api/generate", json={"prompt": ""}, headers={"X-Site-Hash": "h1"}
        )
        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestUsage:
    def test_site_hash_usage(self, gw: Gateway) -> None:
        response = gw.client.get("/api/usage", headers={"X-Site-Hash": "h1"})
        assert response.status_code == 200
        data = response.json()
        assert data["authMethod"] == "site-hash"
        assert data["usage"]["remaining"] == 50
        assert data["creditsBalance"] == 0

    def test_license_usage(self, gw: Gateway) -> None:
        key = gw.new_license(plan="pro")
        data = gw.client.get("/api/usage", headers={"X-License-Key": key}).json()
        assert data["authMethod"] == "license"
        assert data["usage"]["limit"] == 1000
        assert data["organizationId"]

    def test_unknown_license(self, gw: Gateway) -> None:
        response = gw.client.get("/api/usage", headers={"X-License-Key": "nope"})
        assert response.status_code == 401
        assert response.json()["code"] == "LICENSE_NOT_FOUND"


class TestLicense:
    def test_generate_requires_admin_secret(self, gw: Gateway) -> None:
        response = gw.client.post("/api/license/generate", json={"name": "Acme"})
        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    def test_activate_and_cap(self, gw: Gateway) -> None:
        key = gw.new_license(max_sites=1)
        first = gw.client.post(
            "/api/license/activate", json={"licenseKey": key, "siteHash": "s1"}
        )
        assert first.status_code == 200, first.text
        assert first.json()["outcome"] == "created"
        assert first.json()["activeSites"] == 1

        second = gw.client.post(
            "/api/license/activate", json={"licenseKey": key, "siteHash": "s2"}
        )
        assert second.status_code == 403
        assert second.json()["code"] == "SITE_LIMIT_REACHED"
        assert second.json()["max_sites"] == 1

    def test_activate_unknown_key(self, gw: Gateway) -> None:
        response = gw.client.post(
            "/api/license/activate", json={"licenseKey": "nope", "siteHash": "s1"}
        )
        assert response.status_code == 404
        assert response.json()["code"] == "LICENSE_NOT_FOUND"

    def test_activate_missing_site_hash(self, gw: Gateway) -> None:
        response = gw.client.post("/api/license/activate", json={"licenseKey": "k"})
        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_cross_organization_activation(self, gw: Gateway) -> None:
        key_a = gw.new_license()
        key_b = gw.new_license(email=None)
        gw.client.post("/api/license/activate", json={"licenseKey": key_a, "siteHash": "s1"})
        response = gw.client.post(
            "/api/license/activate", json={"licenseKey": key_b, "siteHash": "s1"}
        )
        assert response.status_code == 403
        assert response.json()["code"] == "LICENSE_SITE_MISMATCH"

    def test_disconnect_frees_slot(self, gw: Gateway) -> None:
        key = gw.new_license(max_sites=1)
        gw.client.post("/api/license/activate", json={"licenseKey": key, "siteHash": "s1"})
        response = gw.client.post(
            "/api/license/disconnect", json={"licenseKey": key, "siteHash": "s1"}
        )
        assert response.status_code == 200
        assert response.json()["site"]["isActive"] is False
        assert gw.client.post(
            "/api/license/activate", json={"licenseKey": key, "siteHash": "s2"}
        ).status_code == 200

    def test_deactivate_requires_user(self, gw: Gateway) -> None:
        response = gw.client.post("/api/license/deactivate", json={"siteHash": "s1"})
        assert response.status_code == 401

    def test_owner_deactivates(self, gw: Gateway) -> None:
        key = gw.new_license()
        gw.client.post("/api/license/activate", json={"licenseKey": key, "siteHash": "s1"})
        response = gw.client.post(
            "/api/license/deactivate",
            json={"siteHash": "s1"},
            headers=gw.bearer("owner@example.com"),
        )
        assert response.status_code == 200
        assert response.json()["site"]["isActive"] is False

    def test_deactivated_site_rejected_on_generate(self, gw: Gateway) -> None:
        key = gw.new_license()
        gw.client.post("/api/license/activate", json={"licenseKey": key, "siteHash": "s1"})
        gw.client.post("/api/license/disconnect", json={"licenseKey": key, "siteHash": "s1"})
        response = gw.client.post(
            "/api/generate", json={"prompt": "x"}, headers={"X-Site-Hash": "s1"}
        )
        assert response.status_code == 403
        assert response.json()["code"] == "SITE_DEACTIVATED"

    def test_auto_attach_is_idempotent(self, gw: Gateway) -> None:
        first = gw.client.post("/api/license/auto-attach", json={"siteHash": "s1"})
        second = gw.client.post("/api/license/auto-attach", json={"siteHash": "s1"})
        assert first.status_code == 200, first.text
        assert first.json()["created"] is True
        assert second.json()["created"] is False
        assert first.json()["licenseKey"] == second.json()["licenseKey"]
        assert first.json()["plan"] == "free"

    def test_free_site_upgrades_through_auto_attach(self, gw: Gateway) -> None:
        free = gw.client.post("/api/license/auto-attach", json={"siteHash": "s1"}).json()
        org_key = gw.new_license(plan="agency", max_sites=2)

        response = gw.client.post(
            "/api/license/auto-attach",
            json={"siteHash": "s1"},
            headers={"X-License-Key": org_key},
        )

        assert response.status_code == 200, response.text
        data = response.json()
        assert data["licenseKey"] == org_key
        assert data["licenseKey"] != free["licenseKey"]
        assert data["plan"] == "agency"
        assert data["organizationId"] is not None

    def test_auto_attach_with_unknown_key(self, gw: Gateway) -> None:
        response = gw.client.post(
            "/api/license/auto-attach",
            json={"siteHash": "s1"},
            headers={"X-License-Key": "no-such-key"},
        )
        assert response.status_code == 404
        assert response.json()["code"] == "LICENSE_NOT_FOUND"
        assert asyncio.run(gw.store.get_site("s1")) is None

    def test_license_info(self, gw: Gateway) -> None:
        key = gw.new_license(max_sites=3)
        gw.client.post("/api/license/activate", json={"licenseKey": key, "siteHash": "s1"})
        data = gw.client.get(f"/api/license/info/{key}").json()
        assert data["license"]["maxSites"] == 3
        assert [s["siteHash"] for s in data["sites"]] == ["s1"]
        assert data["members"][0]["email"] == "owner@example.com"
        assert data["members"][0]["role"] == "owner"
        assert data["usage"]["limit"] == 10_000


class TestCredits:
    def test_confirm_is_idempotent(self, gw: Gateway) -> None:
        headers = gw.bearer("buyer@example.com")
        first = gw.client.post("/api/credits/confirm", json={"sessionId": "cs_1"}, headers=headers)
        second = gw.client.post("/api/credits/confirm", json={"sessionId": "cs_1"}, headers=headers)
        assert first.status_code == 200, first.text
        assert first.json()["balance"] == 5
        assert first.json()["alreadyApplied"] is False
        assert second.json()["balance"] == 5
        assert second.json()["alreadyApplied"] is True

        balance = gw.client.get("/api/credits/balance", headers=headers).json()
        assert balance["balance"] == 5

    def test_confirm_for_other_account(self, gw: Gateway) -> None:
        response = gw.client.post(
            "/api/credits/confirm",
            json={"sessionId": "cs_1"},
            headers=gw.bearer("someone@example.com"),
        )
        assert response.status_code == 403

    def test_unpaid_session(self, gw: Gateway) -> None:
        gw.billing.session = CheckoutSession(
            session_id="cs_2", paid=False, email="buyer@example.com", credits=5
        )
        response = gw.client.post(
            "/api/credits/confirm",
            json={"sessionId": "cs_2"},
            headers=gw.bearer("buyer@example.com"),
        )
        assert response.status_code == 400
        assert response.json()["code"] == "PAYMENT_NOT_COMPLETED"

    def test_transactions(self, gw: Gateway) -> None:
        headers = gw.bearer("buyer@example.com")
        gw.client.post("/api/credits/confirm", json={"sessionId": "cs_1"}, headers=headers)
        data = gw.client.get("/api/credits/transactions?page=1&limit=10", headers=headers).json()
        assert data["total"] == 1
        assert data["transactions"][0]["delta"] == 5
        assert data["transactions"][0]["reference"] == "cs_1"

    def test_credits_used_once_quota_is_gone(self, gw: Gateway) -> None:
        headers = gw.bearer("buyer@example.com")
        gw.client.post("/api/credits/confirm", json={"sessionId": "cs_1"}, headers=headers)
        response = gw.client.post("/api/generate", json={"prompt": "x"}, headers=headers)
        assert response.status_code == 200
        assert response.json()["charge"] == "credit"
        assert response.json()["creditsBalance"] == 4

    def test_balance_requires_user(self, gw: Gateway) -> None:
        response = gw.client.get("/api/credits/balance", headers={"X-Site-Hash": "h1"})
        assert response.status_code == 401


class TestOrganization:
    def test_invite(self, gw: Gateway) -> None:
        key = gw.new_license()
        org_id = gw.client.get(f"/api/license/info/{key}").json()["license"]["organizationId"]
        headers = gw.bearer("owner@example.com")

        response = gw.client.post(
            f"/api/organization/{org_id}/invite",
            json={"email": "new@example.com", "role": "admin"},
            headers=headers,
        )
        assert response.status_code == 200, response.text
        assert response.json()["role"] == "admin"

        again = gw.client.post(
            f"/api/organization/{org_id}/invite",
            json={"email": "new@example.com"},
            headers=headers,
        )
        assert again.status_code == 409
        assert again.json()["code"] == "ALREADY_MEMBER"

    def test_invite_unknown_organization(self, gw: Gateway) -> None:
        response = gw.client.post(
            "/api/organization/nope/invite",
            json={"email": "new@example.com"},
            headers=gw.bearer("owner@example.com"),
        )
        assert response.status_code == 404


class TestAuth:
    def test_plugin_init_issues_usable_token(self, gw: Gateway) -> None:
        response = gw.client.post("/api/auth/plugin-init", json={"email": "Writer@Example.com"})
        assert response.status_code == 200, response.text
        data = response.json()
        assert data["email"] == "writer@example.com"

        me = gw.client.get(
            "/api/auth/me", headers={"Authorization": f"Bearer {data['token']}"}
        )
        assert me.status_code == 200
        assert me.json()["userId"] == data["userId"]
        assert me.json()["memberships"] == []

    def test_me_lists_license_ownership(self, gw: Gateway) -> None:
        gw.new_license(email="owner@example.com")
        me = gw.client.get("/api/auth/me", headers=gw.bearer("owner@example.com"))
        assert me.status_code == 200
        assert [m["role"] for m in me.json()["memberships"]] == ["owner"]

    def test_refresh_then_logout_all_revokes(self, gw: Gateway) -> None:
        token = gw.client.post(
            "/api/auth/plugin-init", json={"email": "writer@example.com"}
        ).json()["token"]

        refreshed = gw.client.post("/api/auth/refresh-token", json={"token": token})
        assert refreshed.status_code == 200
        new_token = refreshed.json()["token"]

        logout = gw.client.post(
            "/api/auth/logout-all", headers={"Authorization": f"Bearer {new_token}"}
        )
        assert logout.status_code == 200
        assert logout.json()["jwtVersion"] == 1

        stale = gw.client.get("/api/auth/me", headers={"Authorization": f"Bearer {new_token}"})
        assert stale.status_code == 401
        assert stale.json()["code"] == "INVALID_TOKEN"

        again = gw.client.post("/api/auth/refresh-token", json={"token": token})
        assert again.status_code == 401

    def test_me_rejects_license_key(self, gw: Gateway) -> None:
        key = gw.new_license()
        response = gw.client.get("/api/auth/me", headers={"X-License-Key": key})
        assert response.status_code == 401
        assert response.json()["code"] == "MISSING_AUTH"
