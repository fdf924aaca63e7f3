"""API tests for the risk endpoints (in-process ASGI client, in-memory store)."""

from unittest.mock import AsyncMock, patch

import pytest

from lendtrust.models.user import UserRole
from lendtrust.services.trust_engine.errors import TransientStoreFailure

BASE = "/api/risk"


@pytest.fixture
def no_dispatch():
    with patch("lendtrust.api.risk.dispatch_status_change") as mock_dispatch:
        yield mock_dispatch


async def _people(seed_users):
    borrower, lender, admin = await seed_users(
        (UserRole.BORROWER, {"email": "api-borrower@lendtrust-test.com", "phone": "555 0142"}),
        (UserRole.LENDER, {"company_name": "Island Lending"}),
        (UserRole.ADMIN, {}),
    )
    return borrower, lender, admin


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"

        resp = await client.get(f"{BASE}/health")
        assert resp.status_code == 200


class TestMarkRiskyApi:
    @pytest.mark.asyncio
    async def test_requires_session(self, client, seed_users):
        borrower, _, _ = await _people(seed_users)
        resp = await client.post(f"{BASE}/mark-risky", json={"borrower_id": borrower.id, "reason": "fraud"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_borrower_role_forbidden(self, client, seed_users, auth_headers):
        borrower, _, _ = await _people(seed_users)
        resp = await client.post(
            f"{BASE}/mark-risky",
            json={"borrower_id": borrower.id, "reason": "fraud"},
            headers=auth_headers(borrower),
        )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_mark_and_re_mark(self, client, seed_users, auth_headers, no_dispatch):
        borrower, lender, _ = await _people(seed_users)
        body = {"borrower_id": borrower.id, "reason": "repeated_defaults", "amount_owed": 500, "evidence": "3 missed"}

        first = await client.post(f"{BASE}/mark-risky", json=body, headers=auth_headers(lender))
        assert first.status_code == 200
        data = first.json()
        assert data["risk_state"] == "risky"
        assert data["created"] is True
        assert data["risk_entry"]["status"] == "active"
        assert data["risk_entry"]["reason"] == "repeated_defaults"

        again = await client.post(f"{BASE}/mark-risky", json=body, headers=auth_headers(lender))
        assert again.status_code == 200
        assert again.json()["created"] is False
        assert again.json()["risk_entry"]["id"] == data["risk_entry"]["id"]
        assert no_dispatch.call_count == 1

    @pytest.mark.asyncio
    async def test_invalid_reason_rejected(self, client, seed_users, auth_headers):
        borrower, lender, _ = await _people(seed_users)
        resp = await client.post(
            f"{BASE}/mark-risky",
            json={"borrower_id": borrower.id, "reason": "rude"},
            headers=auth_headers(lender),
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_borrower(self, client, seed_users, auth_headers):
        _, lender, _ = await _people(seed_users)
        resp = await client.post(
            f"{BASE}/mark-risky", json={"borrower_id": 99999, "reason": "other"}, headers=auth_headers(lender),
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_store_outage_is_retryable(self, client, seed_users, auth_headers):
        borrower, lender, _ = await _people(seed_users)
        with patch(
            "lendtrust.api.risk.classifier.mark_risky",
            new=AsyncMock(side_effect=TransientStoreFailure()),
        ):
            resp = await client.post(
                f"{BASE}/mark-risky",
                json={"borrower_id": borrower.id, "reason": "other"},
                headers=auth_headers(lender),
            )
        assert resp.status_code == 503
        assert "Retry-After" in resp.headers


class TestImproveAndHistoryApi:
    @pytest.mark.asyncio
    async def test_improve_then_history(self, client, seed_users, auth_headers, no_dispatch):
        borrower, lender, admin = await _people(seed_users)
        await client.post(
            f"{BASE}/mark-risky",
            json={"borrower_id": borrower.id, "reason": "other"},
            headers=auth_headers(lender),
        )

        resp = await client.post(
            f"{BASE}/mark-improved",
            json={"borrower_id": borrower.id, "reason": "settled"},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 200
        assert resp.json() == {"risk_state": "improved", "resolved": 1}

        hist = await client.get(f"{BASE}/history/{borrower.id}", headers=auth_headers(lender))
        assert hist.status_code == 200
        actions = [e["action"] for e in hist.json()]
        assert actions == ["marked_improved", "marked_risky"]
        assert hist.json()[1]["performed_by"] == "Island Lending"

    @pytest.mark.asyncio
    async def test_history_requires_session(self, client):
        resp = await client.get(f"{BASE}/history/1")
        assert resp.status_code == 401


class TestRiskCheckApi:
    @pytest.mark.asyncio
    async def test_by_email(self, client, seed_users, auth_headers, no_dispatch):
        borrower, lender, _ = await _people(seed_users)
        await client.post(
            f"{BASE}/mark-risky",
            json={"borrower_id": borrower.id, "reason": "fraud", "amount_owed": 75},
            headers=auth_headers(lender),
        )

        resp = await client.get(
            f"{BASE}/risk-check", params={"email": "API-Borrower@lendtrust-test.com"}, headers=auth_headers(lender),
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["borrower_id"] == borrower.id
        assert data["risk_score"] == 40
        assert data["risk_category"] == "high"
        assert data["reporting_lenders"] == 1
        assert float(data["total_amount_owed"]) == 75.0
        assert data["reports"][0]["reported_by"] == "Island Lending"

    @pytest.mark.asyncio
    async def test_missing_lookup_key(self, client, seed_users, auth_headers):
        _, lender, _ = await _people(seed_users)
        resp = await client.get(f"{BASE}/risk-check", headers=auth_headers(lender))
        assert resp.status_code == 400


class TestEntryLifecycleApi:
    @pytest.mark.asyncio
    async def test_appeal_flow(self, client, seed_users, auth_headers, no_dispatch):
        borrower, lender, admin = await _people(seed_users)
        marked = await client.post(
            f"{BASE}/mark-risky",
            json={"borrower_id": borrower.id, "reason": "false_information"},
            headers=auth_headers(lender),
        )
        entry_id = marked.json()["risk_entry"]["id"]

        appeal = await client.post(
            f"{BASE}/entries/{entry_id}/appeal", json={"reason": "payslip was genuine"},
            headers=auth_headers(borrower),
        )
        assert appeal.status_code == 200

        again = await client.post(
            f"{BASE}/entries/{entry_id}/appeal", json={"reason": "again"}, headers=auth_headers(borrower),
        )
        assert again.status_code == 409

        review = await client.post(
            f"{BASE}/entries/{entry_id}/appeal-review", json={"grant": False, "reason": "checked with employer"},
            headers=auth_headers(admin),
        )
        assert review.status_code == 200
        assert review.json()["risk_state"] == "risky"

    @pytest.mark.asyncio
    async def test_withdraw(self, client, seed_users, auth_headers, no_dispatch):
        borrower, lender, _ = await _people(seed_users)
        marked = await client.post(
            f"{BASE}/mark-risky", json={"borrower_id": borrower.id, "reason": "other"}, headers=auth_headers(lender),
        )
        entry_id = marked.json()["risk_entry"]["id"]

        resp = await client.post(
            f"{BASE}/entries/{entry_id}/withdraw", json={"reason": "wrong customer"}, headers=auth_headers(lender),
        )
        assert resp.status_code == 200
        assert resp.json()["risk_state"] == "improved"


class TestInternalHooksApi:
    @pytest.mark.asyncio
    async def test_internal_token_required(self, client):
        resp = await client.post(f"{BASE}/check-auto-improve", json={"loan_id": 1})
        assert resp.status_code == 401
        resp = await client.post(
            f"{BASE}/accounts/registered", json={"borrower_id": 1}, headers={"X-Internal-Token": "wrong"},
        )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_loan(self, client, internal_headers):
        resp = await client.post(f"{BASE}/check-auto-improve", json={"loan_id": 12345}, headers=internal_headers)
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_account_lifecycle_and_identity_check(
        self, client, seed_users, auth_headers, internal_headers, no_dispatch,
    ):
        borrower, lender, _ = await _people(seed_users)

        registered = await client.post(
            f"{BASE}/accounts/registered", json={"borrower_id": borrower.id}, headers=internal_headers,
        )
        assert registered.status_code == 200
        assert registered.json()["has_identity"] is True
        assert registered.json()["is_risky"] is False

        await client.post(
            f"{BASE}/mark-risky",
            json={"borrower_id": borrower.id, "reason": "fraud", "amount_owed": 500},
            headers=auth_headers(lender),
        )
        deleting = await client.post(
            f"{BASE}/accounts/deleting", json={"borrower_id": borrower.id}, headers=internal_headers,
        )
        assert deleting.status_code == 200
        assert deleting.json()["account_deletions"] == 1

        check = await client.post(
            f"{BASE}/identity-check", json={"email": "someone-new@lendtrust-test.com", "phone": "+555-0142"},
        )
        assert check.status_code == 200
        data = check.json()
        assert data["is_risky"] is True
        assert data["times_reported"] == 1
        assert data["account_deletions"] == 1
        assert float(data["total_amount_owed"]) == 500.0
        assert data["blocked"] is False

    @pytest.mark.asyncio
    async def test_identity_check_clean(self, client):
        resp = await client.post(f"{BASE}/identity-check", json={"email": "fresh@lendtrust-test.com"})
        assert resp.status_code == 200
        assert resp.json()["is_risky"] is False

    @pytest.mark.asyncio
    async def test_identity_check_validates_email(self, client):
        resp = await client.post(f"{BASE}/identity-check", json={"email": "not-an-email"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_identity_check_cannot_join_two_people(
        self, client, seed_users, auth_headers, internal_headers, no_dispatch,
    ):
        clean, flagged, lender = await seed_users(
            (UserRole.BORROWER, {"email": "clean-api@lendtrust-test.com", "phone": "555 0700"}),
            (UserRole.BORROWER, {"email": "flagged-api@lendtrust-test.com", "phone": "555 0900"}),
            (UserRole.LENDER, {}),
        )
        for account in (clean, flagged):
            await client.post(
                f"{BASE}/accounts/registered", json={"borrower_id": account.id}, headers=internal_headers,
            )
        await client.post(
            f"{BASE}/mark-risky",
            json={"borrower_id": flagged.id, "reason": "fraud", "amount_owed": 900},
            headers=auth_headers(lender),
        )

        before = await client.post(f"{BASE}/identity-check", json={"email": "clean-api@lendtrust-test.com"})
        mixed = await client.post(
            f"{BASE}/identity-check", json={"email": "clean-api@lendtrust-test.com", "phone": "5550900"},
        )
        after = await client.post(f"{BASE}/identity-check", json={"email": "clean-api@lendtrust-test.com"})

        assert before.json()["is_risky"] is False
        assert mixed.json()["is_risky"] is True
        assert after.json()["is_risky"] is False
        status = await client.post(
            f"{BASE}/accounts/registered", json={"borrower_id": clean.id}, headers=internal_headers,
        )
        assert status.json()["is_risky"] is False
