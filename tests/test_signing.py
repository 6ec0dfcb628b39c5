import asyncio
import json

import httpx
import pytest

from contractops.errors import ConfigurationError, GatewayError, ValidationError
from contractops.signing import ESignaturesClient, SigningDocument, UnsupportedPlatformGateway, build_gateway

DOC = SigningDocument(
    title="Acme - Contract",
    html_content='<div class="contract-section"><h3>Terms</h3><div class="section-content"><p>Be nice.</p></div></div>',
    external_reference_id=7,
    webhook_url="https://app.example/signatures/webhook",
    signers=[{"name": "Jane", "email": "jane@client.com"}, {"name": "Sam", "email": "sam@agency.com"}],
)

def _client(handler, max_retries=1):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ESignaturesClient(http, "tok", "https://esign.test/api", max_retries=max_retries, timeout_s=5.0)

def test_send_creates_contract_and_cleans_up_template():
    calls = []

    def handler(request: httpx.Request):
        calls.append((request.method, request.url.path, request.url.params.get("token")))
        if request.method == "POST" and request.url.path == "/api/templates":
            body = json.loads(request.content)
            assert body["document_elements"][0] == {"type": "text_header_one", "text": "Acme - Contract"}
            return httpx.Response(200, json={"data": [{"template_id": "tpl-1"}]})
        if request.method == "POST" and request.url.path == "/api/contracts":
            body = json.loads(request.content)
            assert body["template_id"] == "tpl-1"
            assert body["signers"][1] == {"name": "Sam", "email": "sam@agency.com", "order": 2}
            assert body["metadata"]["contractId"] == 7
            assert body["webhook_url"] == "https://app.example/signatures/webhook"
            return httpx.Response(200, json={"data": {"contract": {"id": "c-9", "signers": [{"sign_page_url": "https://esign.test/s/c-9"}]}}})
        if request.method == "DELETE":
            return httpx.Response(200, json={})
        return httpx.Response(404)

    out = asyncio.run(_client(handler).send(DOC))
    assert out.document_id == "c-9"
    assert out.sign_url == "https://esign.test/s/c-9"
    assert ("DELETE", "/api/templates/tpl-1", "tok") in calls
    assert all(token == "tok" for _, _, token in calls)

def test_contract_creation_failure_still_deletes_template():
    deleted = []

    def handler(request: httpx.Request):
        if request.url.path == "/api/templates":
            return httpx.Response(200, json={"data": [{"template_id": "tpl-2"}]})
        if request.url.path == "/api/contracts":
            return httpx.Response(422, text="bad signer")
        deleted.append(request.url.path)
        return httpx.Response(200, json={})

    with pytest.raises(GatewayError) as exc:
        asyncio.run(_client(handler).send(DOC))
    assert "422" in exc.value.message
    assert deleted == ["/api/templates/tpl-2"]

def test_server_errors_and_transport_errors_become_gateway_errors():
    def boom(request: httpx.Request):
        return httpx.Response(503, text="unavailable")

    with pytest.raises(GatewayError):
        asyncio.run(_client(boom).send(DOC))

    def unreachable(request: httpx.Request):
        raise httpx.ConnectError("no route", request=request)

    with pytest.raises(GatewayError):
        asyncio.run(_client(unreachable).send(DOC))

def test_get_status():
    def handler(request: httpx.Request):
        assert request.url.path == "/api/contracts/c-9"
        return httpx.Response(200, json={"data": {"contract": {"id": "c-9", "status": "completed"}}})

    assert asyncio.run(_client(handler).get_status("c-9")) == "completed"

def test_get_status_failure_returns_none():
    def handler(request: httpx.Request):
        raise httpx.ReadTimeout("slow", request=request)

    assert asyncio.run(_client(handler).get_status("c-9")) is None

def test_build_gateway(settings):
    gw = build_gateway(settings, "esignatures")
    assert isinstance(gw, ESignaturesClient)
    asyncio.run(gw.aclose())
    assert isinstance(build_gateway(settings, "docusign"), UnsupportedPlatformGateway)
    with pytest.raises(ValidationError):
        build_gateway(settings, "carrier-pigeon")
    settings.esignatures_api_key = None
    with pytest.raises(ConfigurationError):
        build_gateway(settings, "esignatures")

def test_unsupported_platform_fails_on_send():
    gw = UnsupportedPlatformGateway("hellosign", "HelloSign")
    with pytest.raises(GatewayError, match="HelloSign"):
        asyncio.run(gw.send(DOC))
    assert asyncio.run(gw.get_status("x")) is None

def _html_page(request: httpx.Request):
    if request.method == "DELETE":
        return httpx.Response(200, json={})
    if request.url.path == "/api/templates":
        return httpx.Response(200, json={"data": [{"template_id": "tpl-3"}]})
    return httpx.Response(200, text="<html>maintenance</html>", headers={"content-type": "text/html"})

def test_html_body_on_success_status_is_a_gateway_error():
    with pytest.raises(GatewayError, match="non-JSON"):
        asyncio.run(_client(_html_page).send(DOC))

    def html_template(request: httpx.Request):
        return httpx.Response(200, text="<html>oops</html>")

    with pytest.raises(GatewayError):
        asyncio.run(_client(html_template).send(DOC))

def test_html_status_body_returns_none():
    assert asyncio.run(_client(_html_page).get_status("c-9")) is None

def test_html_body_gives_structured_send_failure(settings, clock, counting_store):
    from contractops.lifecycle import SignatureLifecycleManager

    store = counting_store({"contract": [{"id": 1, "title": "Deal", "content": "<p>Terms</p>", "signature_status": None}]})
    client = _client(_html_page)
    mgr = SignatureLifecycleManager(store, lambda platform: client, settings, clock=clock)
    result = asyncio.run(mgr.send_contract_by_id(1, [{"name": "Jane", "email": "jane@client.com"}]))
    assert result.success is False
    assert result.canResend is True
    assert "non-JSON" in result.error

def test_owned_http_client_is_closed():
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    shared = ESignaturesClient(http, "tok", "https://esign.test/api", max_retries=1, timeout_s=5.0)
    asyncio.run(shared.aclose())
    assert not http.is_closed

    owned = ESignaturesClient(http, "tok", "https://esign.test/api", max_retries=1, timeout_s=5.0, owns_http=True)
    asyncio.run(owned.aclose())
    assert http.is_closed
