from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol
import logging

import httpx
from aiolimiter import AsyncLimiter
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from contractops.config import COSettings
from contractops.elements import document_elements
from contractops.errors import ConfigurationError, GatewayError, ValidationError
from contractops.tracing import get_tracer

log = logging.getLogger("contractops.signing")
tracer = get_tracer("contractops.signing")

WEBHOOK_EVENTS = ["document.signed", "document.declined", "document.expired"]

@dataclass(frozen=True)
class SigningDocument:
    title: str
    html_content: str
    external_reference_id: Any
    webhook_url: str
    signers: List[Dict[str, str]] = field(default_factory=list)

@dataclass(frozen=True)
class ProviderDocument:
    document_id: str
    sign_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

class SigningGateway(Protocol):
    platform: str

    async def send(self, document: SigningDocument) -> ProviderDocument: ...

    async def get_status(self, document_id: str) -> Optional[str]: ...

class _RetryableStatus(Exception):
    def __init__(self, response: httpx.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response

class ESignaturesClient:
    platform = "esignatures"

    def __init__(
        self,
        http: httpx.AsyncClient,
        api_key: str,
        base_url: str,
        max_retries: int,
        timeout_s: float,
        limiter: Optional[AsyncLimiter] = None,
        owns_http: bool = False,
    ):
        self._http = http
        self._owns_http = owns_http
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._max_retries = max_retries
        self._timeout_s = timeout_s
        self._limiter = limiter

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._max_retries if self._max_retries > 0 else 1),
            wait=wait_exponential_jitter(initial=0.5, max=10),
            retry=retry_if_exception_type((httpx.TransportError, _RetryableStatus)),
        )

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            async for attempt in self._retrying():
                with attempt:
                    if self._limiter:
                        await self._limiter.acquire()
                    resp = await self._http.request(method, url, params={"token": self._api_key}, json=json, timeout=self._timeout_s)
                    if resp.status_code >= 500:
                        raise _RetryableStatus(resp)
                    return resp
        except httpx.TimeoutException as e:
            raise GatewayError(f"eSignatures request timed out: {method} {path}", details=str(e)) from e
        except httpx.TransportError as e:
            raise GatewayError(f"eSignatures request failed: {method} {path}", details=str(e)) from e
        except _RetryableStatus as e:
            raise GatewayError(f"eSignatures request failed ({e.response.status_code}): {method} {path}", details=e.response.text) from e

    async def _create_template(self, document: SigningDocument) -> str:
        elements = document_elements(document.title, document.html_content)
        resp = await self._request("POST", "/templates", {
            "title": "Contract Template",
            "labels": ["Temporary"],
            "document_elements": elements,
        })
        if resp.is_error:
            raise GatewayError(f"Template creation failed ({resp.status_code})", details=resp.text)
        data = _json_body(resp).get("data")
        if isinstance(data, list) and data:
            data = data[0]
        template_id = data.get("template_id") if isinstance(data, dict) else None
        if not template_id:
            raise GatewayError("Template creation returned no template id", details=resp.text)
        log.info("Created temporary template", extra={"component": "signing", "event": "template_created", "platform": self.platform})
        return template_id

    async def _delete_template(self, template_id: str) -> None:
        try:
            await self._request("DELETE", f"/templates/{template_id}")
        except GatewayError:
            log.warning("Failed to delete temporary template", extra={"component": "signing", "event": "template_cleanup_failed"}, exc_info=True)

    async def send(self, document: SigningDocument) -> ProviderDocument:
        with tracer.start_as_current_span("esignatures.send") as span:
            span.set_attribute("contract_id", str(document.external_reference_id))
            template_id = await self._create_template(document)
            try:
                resp = await self._request("POST", "/contracts", {
                    "template_id": template_id,
                    "signers": [
                        {"name": s["name"], "email": s["email"], "order": i + 1}
                        for i, s in enumerate(document.signers)
                    ],
                    "webhook_url": document.webhook_url,
                    "webhook_events": WEBHOOK_EVENTS,
                    "metadata": {"contractId": document.external_reference_id, "source": "dynamic_template"},
                })
                if resp.is_error:
                    raise GatewayError(f"Contract creation failed ({resp.status_code})", details=resp.text)
                return _provider_document(_json_body(resp))
            finally:
                await self._delete_template(template_id)

    async def get_status(self, document_id: str) -> Optional[str]:
        with tracer.start_as_current_span("esignatures.get_status") as span:
            span.set_attribute("document_id", document_id)
            try:
                resp = await self._request("GET", f"/contracts/{document_id}")
            except GatewayError:
                log.warning("Status check failed", extra={"component": "signing", "event": "status_failed", "document_id": document_id}, exc_info=True)
                return None
            if resp.is_error:
                return None
            try:
                body = _json_body(resp)
            except GatewayError:
                log.warning("Status check returned an unreadable body", extra={"component": "signing", "event": "status_unreadable", "document_id": document_id})
                return None
            return body.get("status") or _contract_of(body).get("status")

def _json_body(resp: httpx.Response) -> Dict[str, Any]:
    try:
        body = resp.json()
    except ValueError as e:
        raise GatewayError(f"Provider returned a non-JSON response ({resp.status_code})", details=resp.text[:500]) from e
    if not isinstance(body, dict):
        raise GatewayError("Provider returned an unexpected response", details=resp.text[:500])
    return body

def _contract_of(body: Dict[str, Any]) -> Dict[str, Any]:
    data = body.get("data")
    contract = data.get("contract") if isinstance(data, dict) else None
    return contract if isinstance(contract, dict) else {}

def _provider_document(body: Dict[str, Any]) -> ProviderDocument:
    contract = _contract_of(body)
    doc_id = body.get("contract_id") or body.get("id") or contract.get("id")
    if not doc_id:
        raise GatewayError("Provider response carried no document id")
    sign_url = body.get("signing_url") or body.get("sign_url")
    if not sign_url:
        signers = contract.get("signers") or []
        first = signers[0] if isinstance(signers, list) and signers else None
        sign_url = first.get("sign_page_url") if isinstance(first, dict) else None
    return ProviderDocument(document_id=str(doc_id), sign_url=sign_url, raw=body)

class UnsupportedPlatformGateway:
    def __init__(self, platform: str, label: str):
        self.platform = platform
        self._label = label

    async def send(self, document: SigningDocument) -> ProviderDocument:
        raise GatewayError(f"{self._label} integration not implemented yet")

    async def get_status(self, document_id: str) -> Optional[str]:
        return None

_PLACEHOLDER_PLATFORMS = {"docusign": "DocuSign", "hellosign": "HelloSign"}

def build_gateway(settings: COSettings, platform: str, http: Optional[httpx.AsyncClient] = None, limiter: Optional[AsyncLimiter] = None) -> SigningGateway:
    if platform == "esignatures":
        if not settings.esignatures_api_key:
            raise ConfigurationError("E-signature provider is not configured", details="CO_ESIGNATURES_API_KEY is not set")
        return ESignaturesClient(
            http or httpx.AsyncClient(),
            settings.esignatures_api_key,
            settings.esignatures_base_url,
            settings.max_retries,
            settings.request_timeout_s,
            limiter=limiter,
            owns_http=http is None,
        )
    if platform in _PLACEHOLDER_PLATFORMS:
        return UnsupportedPlatformGateway(platform, _PLACEHOLDER_PLATFORMS[platform])
    raise ValidationError(f"Unsupported platform: {platform}")
