"""HTTP surface of the GSTR-2B reconciliation API."""
import json
import uuid
from datetime import date
from decimal import Decimal

import pytest

from conftest import SUPPLIER_S, SUPPLIER_T

BASE = "/api/v1/gst/gstr2b"


@pytest.fixture
async def import_payload(company_id, statement, add_vendor_invoice):
    statement.invoice(SUPPLIER_S, "INV-001", "05-04-2024", 10000, cgst=900, sgst=900)
    statement.invoice(SUPPLIER_T, "INV-003", "12-04-2024", 8000, igst=1440)
    await add_vendor_invoice("INV001", date(2024, 4, 5), 10000, cgst=900, sgst=900)
    return {
        "company_id": str(company_id),
        "return_period": "202404",
        "raw_statement": statement.build(),
        "file_name": "GSTR2B_042024.json",
    }


async def create_import(client, payload) -> dict:
    response = await client.post(f"{BASE}/imports", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["checks"]["database"] == "connected"
    assert response.json()["checks"]["stale_reconciliations"] == 0


class TestImports:

    async def test_import_and_read_back(self, client, import_payload):
        batch = await create_import(client, import_payload)

        assert batch["status"] == "PENDING"
        assert batch["total_invoices"] == 2
        assert batch["file_name"] == "GSTR2B_042024.json"
        assert Decimal(str(batch["total_itc_amount"])) == Decimal("3240")

        response = await client.get(f"{BASE}/imports/{batch['id']}")
        assert response.status_code == 200
        assert response.json()["id"] == batch["id"]

        response = await client.get(f"{BASE}/imports/period/{import_payload['company_id']}/202404")
        assert response.json()["id"] == batch["id"]

        response = await client.get(f"{BASE}/imports", params={"company_id": import_payload["company_id"]})
        listing = response.json()
        assert listing["total"] == 1
        assert listing["pages"] == 1
        assert listing["items"][0]["id"] == batch["id"]

        response = await client.get(
            f"{BASE}/imports", params={"company_id": import_payload["company_id"], "status": "COMPLETED"}
        )
        assert response.json()["total"] == 0

    async def test_statement_as_text(self, client, import_payload):
        import_payload["raw_statement"] = json.dumps(import_payload["raw_statement"])
        batch = await create_import(client, import_payload)
        assert batch["total_invoices"] == 2

    async def test_duplicate_is_conflict(self, client, import_payload):
        await create_import(client, import_payload)

        response = await client.post(f"{BASE}/imports", json=import_payload)

        assert response.status_code == 409
        assert response.json()["error_code"] == "DUPLICATE_IMPORT"

        import_payload["replace"] = True
        response = await client.post(f"{BASE}/imports", json=import_payload)
        assert response.status_code == 201

    async def test_period_mismatch(self, client, import_payload):
        import_payload["return_period"] = "202405"
        response = await client.post(f"{BASE}/imports", json=import_payload)

        assert response.status_code == 422
        assert response.json()["error_code"] == "PERIOD_MISMATCH"

    @pytest.mark.parametrize("period", ["202413", "2024-04", "042024"])
    async def test_bad_period_format(self, client, import_payload, period):
        import_payload["return_period"] = period
        response = await client.post(f"{BASE}/imports", json=import_payload)
        assert response.status_code == 422

    async def test_unknown_import(self, client):
        response = await client.get(f"{BASE}/imports/{uuid.uuid4()}")
        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"

    async def test_delete(self, client, import_payload):
        batch = await create_import(client, import_payload)

        response = await client.delete(f"{BASE}/imports/{batch['id']}")
        assert response.status_code == 204

        response = await client.get(f"{BASE}/imports/{batch['id']}")
        assert response.status_code == 404


class TestReconciliationFlow:

    async def test_reconcile_review_and_summaries(self, client, import_payload):
        batch = await create_import(client, import_payload)
        company_id = import_payload["company_id"]

        response = await client.post(f"{BASE}/imports/{batch['id']}/reconcile")
        assert response.status_code == 200
        summary = response.json()
        assert summary["status"] == "COMPLETED"
        assert summary["matched_count"] == 1
        assert summary["unmatched_count"] == 1

        response = await client.get(f"{BASE}/imports/{batch['id']}/invoices", params={"match_status": "UNMATCHED"})
        listing = response.json()
        assert listing["total"] == 1
        unmatched = listing["items"][0]
        assert unmatched["invoice_number"] == "INV-003"

        response = await client.get(f"{BASE}/invoices/{unmatched['id']}")
        assert response.status_code == 200
        assert response.json()["discrepancies"]

        response = await client.get(f"{BASE}/mismatches", params={"company_id": company_id, "return_period": "202404"})
        assert [i["invoice_number"] for i in response.json()] == ["INV-003"]

        response = await client.post(f"{BASE}/invoices/{unmatched['id']}/reject", json={"reason": "   "})
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"

        response = await client.post(f"{BASE}/invoices/{unmatched['id']}/reject", json={"reason": "unknown supplier"})
        assert response.status_code == 200
        assert response.json()["action_status"] == "REJECTED"

        response = await client.post(f"{BASE}/invoices/{unmatched['id']}/accept")
        assert response.status_code == 409
        assert response.json()["error_code"] == "INVALID_STATE"

        response = await client.post(f"{BASE}/invoices/{unmatched['id']}/reset")
        assert response.status_code == 200
        assert response.json()["action_status"] == "PENDING"

        params = {"company_id": company_id, "return_period": "202404"}
        response = await client.get(f"{BASE}/summary", params=params)
        assert response.status_code == 200
        assert Decimal(str(response.json()["match_percentage"])) == Decimal("50")

        response = await client.get(f"{BASE}/suppliers", params=params)
        assert [s["supplier_gstin"] for s in response.json()] == [SUPPLIER_S, SUPPLIER_T]

        response = await client.get(f"{BASE}/credit-comparison", params=params)
        comparison = response.json()
        assert Decimal(str(comparison["igst"]["difference"])) == Decimal("1440")

    async def test_manual_match_with_unknown_vendor_invoice(self, client, import_payload):
        batch = await create_import(client, import_payload)
        await client.post(f"{BASE}/imports/{batch['id']}/reconcile")
        listing = (await client.get(f"{BASE}/imports/{batch['id']}/invoices")).json()

        response = await client.post(
            f"{BASE}/invoices/{listing['items'][0]['id']}/manual-match",
            json={"vendor_invoice_id": str(uuid.uuid4())},
        )
        assert response.status_code == 404

    async def test_action_before_reconcile(self, client, import_payload):
        batch = await create_import(client, import_payload)
        listing = (await client.get(f"{BASE}/imports/{batch['id']}/invoices")).json()

        response = await client.post(f"{BASE}/invoices/{listing['items'][0]['id']}/reset")
        assert response.status_code == 409

    async def test_summary_for_missing_period(self, client, company_id):
        response = await client.get(f"{BASE}/summary", params={"company_id": str(company_id), "return_period": "202404"})
        assert response.status_code == 404

    async def test_summary_rejects_bad_period(self, client, company_id):
        response = await client.get(f"{BASE}/summary", params={"company_id": str(company_id), "return_period": "2024"})
        assert response.status_code == 422
