import asyncio
import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from contractops import api
from contractops.persistence import InMemoryGateway

def _seed():
    return {
        "proposal": [{"id": 10, "title": "Acme Website", "company_id": 3, "billing_period": "one_time"}],
        "company": [{"id": 3, "title": "Acme"}],
        "product": [
            {"id": 1, "title": "Website", "platform": "webflow", "payment_split_count": 2, "deliverables": [{"title": "Homepage"}]},
            {"id": 2, "title": "Hosting", "deliverables": []},
        ],
        "proposal_product": [
            {"proposal_id": 10, "product_id": 1, "price": "1000", "order": 1},
            {"proposal_id": 10, "product_id": 2, "price": "200", "order": 2},
        ],
    }

@pytest.fixture
def wired(settings, counting_store, fake_gateway):
    store = counting_store(_seed())
    gateway = fake_gateway(status="completed")
    api.configure(settings=settings, store=store, gateways=lambda platform: gateway)
    return TestClient(api.app), store, gateway

def _generate(client, **extra):
    body = {"action": "generate_contract", "proposalId": 10, **extra}
    return client.post("/contracts", json=body, headers={"x-contact-id": "5"})

def test_health(wired):
    client, _, _ = wired
    assert client.get("/health").json() == {"status": "ok"}

def test_generate_contract_creates_contract_and_payments(wired):
    client, store, _ = wired
    r = _generate(client)
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    contract = body["contract"]
    assert contract["title"] == "Acme Website - Contract"
    assert contract["total_amount"] == 1200.0
    assert contract["billing_period"] == "one_time"
    assert contract["author_id"] == 5

    payments = store.rows("payment")
    assert [p["title"] for p in payments] == ["Website - Payment 1 of 2", "Website - Payment 2 of 2", "Hosting"]
    assert sum(p["amount"] for p in payments) == 1200.0
    assert asyncio.run(store.get("proposal", 10))["status"] == "approved"

def test_generate_contract_without_actor_is_401(wired):
    client, store, _ = wired
    r = client.post("/contracts", json={"action": "generate_contract", "proposalId": 10})
    assert r.status_code == 401
    assert r.json()["error"] == "Unable to identify current user"
    assert store.rows("contract") == []

def test_contracts_request_validation(wired):
    client, _, _ = wired
    r = client.post("/contracts", json={"action": "generate_contract"})
    assert r.status_code == 400
    assert r.json()["error"] == "Missing required fields: action and proposalId"

    r = client.post("/contracts", json={"action": "shred", "proposalId": 10})
    assert r.status_code == 400
    assert "Unknown action" in r.json()["error"]

    r = client.post("/contracts", json={"action": "regenerate_content"})
    assert r.status_code == 400

    r = client.post("/contracts", json={"action": "generate_contract", "proposalId": 99}, headers={"x-contact-id": "5"})
    assert r.status_code == 404

def test_send_for_signature_through_contracts_action(wired):
    client, store, gateway = wired
    asyncio.run(store.insert_many("contract_contractpart", [{"contract_id": 1, "contractpart_id": 1, "order_index": 0}]))
    asyncio.run(store.insert("contractpart", {"id": 1, "title": "Scope", "content": "{{#each products}}{{title}}{{/each}}"}))
    _generate(client)

    r = client.post("/contracts", json={
        "action": "send_for_signature",
        "proposalId": 10,
        "signers": [{"name": "Jane Client", "email": "jane@client.com"}],
    })
    body = r.json()
    assert r.status_code == 200
    assert body["success"] is True
    assert body["signature"]["documentId"] == "doc-1"
    assert gateway.sent[0].title == "Acme Website - Contract"

def test_signatures_endpoint_rejects_bad_signers_without_writes(wired):
    client, store, gateway = wired
    _generate(client)
    before = list(store.writes)

    r = client.post("/signatures", json={"contractId": 1, "signers": [{"name": "Jane", "email": "not-an-email"}]})
    assert r.status_code == 400
    body = r.json()
    assert body["invalidSigners"] == [{"index": 0, "name": "Jane", "email": "not-an-email"}]
    assert "not-an-email" in body["details"]
    assert store.writes == before
    assert gateway.sent == []

def test_signatures_send_and_poll(wired):
    client, store, gateway = wired
    asyncio.run(store.insert("contract", {"id": 7, "title": "Deal", "content": "<p>Terms</p>", "status": "draft", "signature_status": None}))

    assert client.post("/signatures", json={}).status_code == 400

    r = client.post("/signatures", json={"contractId": 7, "signers": [{"name": "Jane", "email": "jane@client.com"}]})
    assert r.status_code == 200
    assert r.json()["success"] is True

    status = client.get("/signatures", params={"contractId": 7}).json()
    assert status["status"] == "signed"
    assert status["documentId"] == "doc-1"
    assert gateway.polls == ["doc-1"]

    assert client.get("/signatures").status_code == 400
    assert client.get("/signatures", params={"contractId": 999}).status_code == 404

def test_signatures_gateway_failure_is_structured(settings, counting_store, fake_gateway):
    store = counting_store({"contract": [{"id": 7, "title": "Deal", "content": "<p>x</p>", "signature_status": None}]})
    api.configure(settings=settings, store=store, gateways=lambda p: fake_gateway(fail="provider down"))
    r = TestClient(api.app).post("/signatures", json={"contractId": 7, "signers": [{"name": "Jane", "email": "jane@client.com"}]})
    assert r.status_code == 200
    assert r.json()["success"] is False
    assert r.json()["canResend"] is True
    assert r.json()["error"] == "provider down"

def test_webhook_requires_valid_signature(wired):
    client, store, _ = wired
    asyncio.run(store.insert("contract", {"id": 7, "title": "Deal", "signature_status": "sent"}))
    body = json.dumps({"event": "document.signed", "metadata": {"contractId": 7}}).encode()

    r = client.post("/signatures/webhook", content=body, headers={"x-esignatures-signature": "nope"})
    assert r.status_code == 401
    assert asyncio.run(store.get("contract", 7))["signature_status"] == "sent"

    sig = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()
    r = client.post("/signatures/webhook", content=body, headers={"x-esignatures-signature": sig})
    assert r.status_code == 200
    assert r.json()["status"] == "signed"
    assert asyncio.run(store.get("contract", 7))["signature_status"] == "signed"

def test_regenerate_errors_are_structured(wired):
    client, _, _ = wired
    r = client.post("/contracts", json={"action": "regenerate_content", "contractId": 99})
    assert r.status_code == 404
    assert r.json() == {"error": "Contract not found", "details": "contract 99"}

def test_shutdown_closes_provider_http_client(settings):
    api.configure(settings=settings, store=InMemoryGateway())
    http = api._state["http"]
    with TestClient(api.app) as client:
        assert client.get("/health").status_code == 200
    assert http.is_closed
    assert api._state == {}
