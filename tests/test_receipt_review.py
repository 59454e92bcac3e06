"""Receipt status lookup and the admin verify / reject flow."""

import json

import pytest
from sqlmodel import select

from conftest import auth_headers, make_receipt
from models import AuditLog, BonusClaim, BonusClaimStatus, Receipt
from services.entitlements import resolve_entitlements


async def audit_entries(session, action):
    result = await session.exec(select(AuditLog).where(AuditLog.action == action))
    return result.all()


class TestStatusLookup:
    @pytest.mark.asyncio
    async def test_pending_receipt(self, client, session, reader):
        user, _ = reader
        receipt = await make_receipt(session, user.id, retailer="Bookshop")

        response = await client.post("/receipts/verify", json={"receiptId": receipt.id})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["receiptId"] == receipt.id
        assert data["status"] == "PENDING"
        assert data["verified"] is False
        assert data["retailer"] == "Bookshop"
        assert data["requiresManualReview"] is True
        assert data["confidence"] == 0
        assert data["amount"] is None

    @pytest.mark.asyncio
    async def test_lookup_never_changes_state(self, client, session, reader):
        user, _ = reader
        receipt = await make_receipt(session, user.id)

        await client.post("/receipts/verify", json={"receiptId": receipt.id})

        refreshed = await session.get(Receipt, receipt.id, populate_existing=True)
        assert refreshed.status == "PENDING"

    @pytest.mark.asyncio
    async def test_missing_id(self, client):
        response = await client.post("/receipts/verify", json={})
        assert response.status_code == 400
        assert response.json()["error"] == "MISSING_RECEIPT_ID"

    @pytest.mark.asyncio
    async def test_unknown_id(self, client):
        response = await client.post("/receipts/verify", json={"receiptId": "does-not-exist"})
        assert response.status_code == 404
        assert response.json()["error"] == "RECEIPT_NOT_FOUND"


class TestAdminReview:
    @pytest.mark.asyncio
    async def test_verify_grants_preorder(self, client, session, session_factory, reader, admin):
        user, _ = reader
        _, admin_token = admin
        receipt = await make_receipt(session, user.id)

        response = await client.post(f"/admin/receipts/{receipt.id}/verify", headers=auth_headers(admin_token))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "VERIFIED"
        assert data["verifiedBy"] == "admin@example.com"
        assert data["verifiedAt"] is not None

        assert (await resolve_entitlements(session_factory, user.id)).has_preordered is True

        entries = await audit_entries(session, "VERIFY_RECEIPT")
        assert len(entries) == 1
        assert entries[0].resource_id == receipt.id
        assert json.loads(entries[0].details)["previous_status"] == "PENDING"

    @pytest.mark.asyncio
    async def test_reject_requires_reason(self, client, session, reader, admin):
        user, _ = reader
        _, admin_token = admin
        receipt = await make_receipt(session, user.id)

        response = await client.post(
            f"/admin/receipts/{receipt.id}/reject", json={"reason": "  "}, headers=auth_headers(admin_token)
        )

        assert response.status_code == 400
        assert response.json()["error"] == "MISSING_REASON"

    @pytest.mark.asyncio
    async def test_reject(self, client, session, session_factory, reader, admin):
        user, _ = reader
        _, admin_token = admin
        receipt = await make_receipt(session, user.id)

        response = await client.post(
            f"/admin/receipts/{receipt.id}/reject",
            json={"reason": "Order is for a different book"},
            headers=auth_headers(admin_token),
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "REJECTED"
        assert data["rejectionReason"] == "Order is for a different book"
        assert (await resolve_entitlements(session_factory, user.id)).has_preordered is False
        assert len(await audit_entries(session, "REJECT_RECEIPT")) == 1

    @pytest.mark.asyncio
    async def test_second_decision_is_a_conflict(self, client, session, reader, admin):
        user, _ = reader
        _, admin_token = admin
        receipt = await make_receipt(session, user.id)
        headers = auth_headers(admin_token)

        assert (await client.post(f"/admin/receipts/{receipt.id}/verify", headers=headers)).status_code == 200
        again = await client.post(
            f"/admin/receipts/{receipt.id}/reject", json={"reason": "changed my mind"}, headers=headers
        )

        assert again.status_code == 409
        assert again.json()["error"] == "INVALID_STATE_TRANSITION"
        assert again.json()["message"] == "Receipt is already VERIFIED"

    @pytest.mark.asyncio
    async def test_unknown_receipt(self, client, admin):
        _, admin_token = admin
        response = await client.post("/admin/receipts/nope/verify", headers=auth_headers(admin_token))
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_decisions_carry_over_to_pending_claims(self, client, session, reader, admin):
        user, _ = reader
        _, admin_token = admin
        approved_receipt = await make_receipt(session, user.id)
        rejected_receipt = await make_receipt(session, user.id)
        for receipt in (approved_receipt, rejected_receipt):
            session.add(
                BonusClaim(
                    user_id=user.id,
                    receipt_id=receipt.id,
                    delivery_email=user.email,
                    retailer=receipt.retailer,
                )
            )
        await session.commit()
        headers = auth_headers(admin_token)

        await client.post(f"/admin/receipts/{approved_receipt.id}/verify", headers=headers)
        await client.post(
            f"/admin/receipts/{rejected_receipt.id}/reject", json={"reason": "unreadable"}, headers=headers
        )

        claims = {
            c.receipt_id: c
            for c in (await session.exec(select(BonusClaim).execution_options(populate_existing=True))).all()
        }
        assert claims[approved_receipt.id].status == BonusClaimStatus.APPROVED.value
        assert claims[approved_receipt.id].processed_by == "admin@example.com"
        assert claims[rejected_receipt.id].status == BonusClaimStatus.REJECTED.value

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, client, session, reader, admin):
        user, _ = reader
        _, admin_token = admin
        await make_receipt(session, user.id, status="PENDING")
        await make_receipt(session, user.id, status="VERIFIED")

        response = await client.get("/admin/receipts?status=pending", headers=auth_headers(admin_token))

        assert response.status_code == 200
        data = response.json()["data"]
        assert [r["status"] for r in data] == ["PENDING"]

    @pytest.mark.asyncio
    async def test_list_rejects_unknown_status(self, client, admin):
        _, admin_token = admin
        response = await client.get("/admin/receipts?status=LOST", headers=auth_headers(admin_token))
        assert response.status_code == 400
