"""HTTP surface: auth, status mapping and response shapes."""

import pytest
from fastapi.testclient import TestClient

from chainpay.services.deposits import main

from conftest import TREASURY


HEADERS = {"x-api-key": "test-api-key"}


@pytest.fixture
def client(service, monkeypatch):
    monkeypatch.setattr(main, "service", service)
    return TestClient(main.app)


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"ok": True}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "deposit_scan_passes_total" in metrics.text


def test_scan_requires_api_key(client):
    assert client.post("/internal/scan").status_code == 401
    assert client.post("/internal/scan", headers={"x-api-key": "wrong"}).status_code == 401


def test_manual_scan_returns_pass_statistics(client, chain, make_user):
    make_user()
    chain.add("0x" + "a1" * 32, block_number=985, amount_units=1_500_000)

    resp = client.post("/internal/scan", headers=HEADERS)

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["new_transfers"] == 1
    assert body["newly_credited"] == 1


def test_manual_scan_maps_rpc_failure_to_503(client, chain):
    chain.fail = True
    assert client.post("/internal/scan", headers=HEADERS).status_code == 503


def test_intent_lifecycle_over_http(client, chain, make_user):
    user_id = make_user()

    created = client.post("/deposits/intents", json={"user_id": user_id, "amount": "10.25"}, headers=HEADERS)
    assert created.status_code == 200
    intent = created.json()
    assert intent["deposit_address"] == TREASURY
    assert intent["expected_amount"] == "10.250000"
    assert intent["warnings"]

    chain.add("0x" + "c4" * 32, block_number=997, amount_units=10_250_000)
    client.post("/internal/scan", headers=HEADERS)

    status = client.get(f"/deposits/{intent['intent_id']}/status")
    assert status.status_code == 200
    body = status.json()
    assert body["deposit_intent"]["status"] == "DETECTED"
    assert body["transactions"][0]["amount"] == "10.250000"
    assert body["transactions"][0]["confirmations"] == 3

    history = client.get("/deposits/intents", params={"user_id": user_id}, headers=HEADERS)
    assert history.status_code == 200
    assert [d["intent_id"] for d in history.json()["deposits"]] == [intent["intent_id"]]


def test_intent_errors(client, make_user, fake_redis):
    user_id = make_user()
    assert client.post("/deposits/intents", json={"user_id": "nobody", "amount": "1"}, headers=HEADERS).status_code == 404
    assert client.post("/deposits/intents", json={"user_id": user_id, "amount": "-1"}, headers=HEADERS).status_code == 422
    assert (
        client.post("/deposits/intents", json={"user_id": user_id, "amount": "0.0000001"}, headers=HEADERS).status_code
        == 400
    )

    for _ in range(5):
        assert client.post("/deposits/intents", json={"user_id": user_id, "amount": "1"}, headers=HEADERS).status_code == 200
    assert client.post("/deposits/intents", json={"user_id": user_id, "amount": "1"}, headers=HEADERS).status_code == 429


def test_unknown_intent_status_is_404(client):
    assert client.get("/deposits/missing/status").status_code == 404


def test_admin_endpoints(client, chain, make_user):
    make_user()
    chain.add("0x" + "a1" * 32, block_number=985, amount_units=1_500_000)
    client.post("/internal/scan", headers=HEADERS)

    assert client.get("/admin/deposits").status_code == 401
    deposits = client.get("/admin/deposits", params={"status": "credited"}, headers=HEADERS).json()
    assert deposits["pagination"] == {"page": 1, "limit": 50, "total": 1, "pages": 1}
    assert deposits["summary"]["total_credited"] == "1.500000"
    assert client.get("/admin/deposits", params={"status": "nope"}, headers=HEADERS).status_code == 400

    ledger = client.get("/admin/ledger", headers=HEADERS).json()
    assert ledger["transactions"][0]["idempotency_key"] == f"deposit:{'0x' + 'a1' * 32}:0"

    report = client.get("/reconciliation", headers=HEADERS).json()
    assert report == {"users_checked": 1, "mismatched_count": 0, "mismatched_users": []}
