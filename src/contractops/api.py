from __future__ import annotations
import json
from contextlib import asynccontextmanager
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx
from aiolimiter import AsyncLimiter
from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from contractops.compiler import compile_contract
from contractops.config import COSettings, get_settings
from contractops.errors import ContractOpsError, NotFoundError, ValidationError
from contractops.lifecycle import SignatureLifecycleManager, verify_webhook_signature
from contractops.logging import configure_logging
from contractops.orchestrator import ContractGenerator, GenerationOptions, StaticActor, load_proposal
from contractops.payments import generate_payments_from_proposal
from contractops.persistence import InMemoryGateway, PersistenceGateway
from contractops.schemas import coerce_billing_period
from contractops.signing import SigningGateway, build_gateway
from contractops.tracing import TracingConfig, configure_tracing

log = logging.getLogger("contractops.api")

_state: Dict[str, Any] = {}

async def shutdown() -> None:
    http: Optional[httpx.AsyncClient] = _state.get("http")
    if http is not None and not http.is_closed:
        await http.aclose()
    _state.clear()

@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await shutdown()

app = FastAPI(title="Contract Operations API", version="0.1.0", lifespan=lifespan)

class ContractsRequest(BaseModel):
    action: Optional[str] = None
    proposalId: Optional[int] = None
    contractId: Optional[int] = None
    billingPeriod: Optional[str] = None
    selectedProducts: Optional[List[int]] = None
    signers: List[Dict[str, Any]] = Field(default_factory=list)
    platform: Optional[str] = None
    forceResend: bool = False

class SignatureRequest(BaseModel):
    contractId: Optional[int] = None
    platform: Optional[str] = None
    signers: List[Dict[str, Any]] = Field(default_factory=list)
    forceResend: bool = False

def configure(
    settings: Optional[COSettings] = None,
    store: Optional[PersistenceGateway] = None,
    gateways: Optional[Callable[[str], SigningGateway]] = None,
    compiler=compile_contract,
) -> None:
    """(Re)build the service graph; tests pass fakes for the store and gateways."""
    s = settings or get_settings()
    store = store or InMemoryGateway()
    http = None
    if gateways is None:
        http = httpx.AsyncClient()
        limiter = AsyncLimiter(max_rate=s.max_rps, time_period=1) if s.max_rps > 0 else None

        def gateways(platform: str) -> SigningGateway:
            return build_gateway(s, platform, http=http, limiter=limiter)

    _state.clear()
    _state.update({
        "s": s,
        "http": http,
        "store": store,
        "generator": ContractGenerator(store, s, compiler=compiler),
        "lifecycle": SignatureLifecycleManager(store, gateways, s),
    })

def _init_once():
    if _state:
        return
    s = get_settings()
    configure_logging()
    configure_tracing(TracingConfig(service_name=s.service_name, otlp_endpoint=s.otlp_endpoint))
    configure(settings=s)

def _error(status_code: int, error: str, details: Optional[str] = None) -> JSONResponse:
    body = {"error": error}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)

@app.exception_handler(ContractOpsError)
async def _contractops_error(request: Request, exc: ContractOpsError):
    if exc.status_code >= 500:
        log.error(exc.message, extra={"component": "api", "event": "error"}, exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

@app.exception_handler(RequestValidationError)
async def _request_validation_error(request: Request, exc: RequestValidationError):
    return _error(400, "Invalid request body", json.dumps(exc.errors(), default=str))

async def _contract_for_proposal(store: PersistenceGateway, proposal_id: int) -> Dict[str, Any]:
    rows = await store.select("contract", {"proposal_id": proposal_id}, order_by="id")
    if not rows:
        raise NotFoundError("No contract found for this proposal. Generate a contract first.")
    return rows[-1]

async def _generate_contract(req: ContractsRequest, contact_id: Optional[int]) -> Dict[str, Any]:
    s: COSettings = _state["s"]
    store: PersistenceGateway = _state["store"]
    generator: ContractGenerator = _state["generator"]

    proposal = await load_proposal(store, req.proposalId)
    period = coerce_billing_period(req.billingPeriod or proposal.billing_period)
    await generator.approve_proposal(proposal, period)

    selected = req.selectedProducts or [pp.product_id for pp in proposal.proposal_products]
    actor = StaticActor(contact_id if contact_id is not None else s.actor_contact_id)
    contract = await generator.generate_contract_from_proposal(proposal, GenerationOptions(period, selected), actor)

    try:
        await generate_payments_from_proposal(store, proposal, contract["id"], period, selected)
    except Exception:
        log.error("Payment generation failed (non-fatal)", extra={"component": "api", "event": "payments_failed", "contract_id": contract["id"]}, exc_info=True)

    return {"success": True, "contract": contract, "message": "Contract generated successfully"}

async def _send_for_signature(req: ContractsRequest) -> Dict[str, Any]:
    contract = await _contract_for_proposal(_state["store"], req.proposalId)
    lifecycle: SignatureLifecycleManager = _state["lifecycle"]
    result = await lifecycle.send_contract(contract, req.signers, force_resend=req.forceResend, platform=req.platform)
    body = {"success": result.success, "contract": contract, "signature": result.model_dump()}
    if result.success:
        body["message"] = "Contract sent for signature successfully"
    else:
        body["error"] = result.error
    return body

async def _generate_payments(req: ContractsRequest) -> Dict[str, Any]:
    store: PersistenceGateway = _state["store"]
    proposal = await load_proposal(store, req.proposalId)
    contract = await _contract_for_proposal(store, req.proposalId)
    payments = await generate_payments_from_proposal(store, proposal, contract["id"], req.billingPeriod, req.selectedProducts)
    return {"success": True, "payments": [p.model_dump() for p in payments], "message": "Payments generated successfully"}

async def _regenerate_content(req: ContractsRequest) -> Dict[str, Any]:
    if req.contractId is None:
        raise ValidationError("Missing required field: contractId")
    contract = await _state["generator"].regenerate_content(req.contractId)
    return {"success": True, "contract": contract, "message": "Contract updated successfully"}

@app.get("/health")
def health():
    _init_once()
    return {"status": "ok"}

@app.post("/contracts")
async def contracts(req: ContractsRequest, x_contact_id: Optional[int] = Header(default=None)):
    _init_once()
    log.info("Contracts request", extra={"component": "api", "event": req.action, "proposal_id": req.proposalId})
    if req.action != "regenerate_content" and (not req.action or req.proposalId is None):
        return _error(400, "Missing required fields: action and proposalId")

    try:
        if req.action == "regenerate_content":
            return await _regenerate_content(req)
        if req.action == "generate_contract":
            return await _generate_contract(req, x_contact_id)
        if req.action == "send_for_signature":
            return await _send_for_signature(req)
        if req.action == "generate_payments":
            return await _generate_payments(req)
    except ContractOpsError:
        raise
    except Exception as e:
        log.error("Contracts request failed", extra={"component": "api", "event": "error", "proposal_id": req.proposalId}, exc_info=True)
        return _error(500, "Failed to process contract request", str(e))
    return _error(400, f"Unknown action: {req.action}")

@app.post("/signatures")
async def send_for_signature(req: SignatureRequest):
    _init_once()
    if req.contractId is None:
        return _error(400, "Contract ID is required")
    lifecycle: SignatureLifecycleManager = _state["lifecycle"]
    try:
        result = await lifecycle.send_contract_by_id(req.contractId, req.signers, force_resend=req.forceResend, platform=req.platform)
    except ContractOpsError:
        raise
    except Exception as e:
        log.error("Signature request failed", extra={"component": "api", "event": "error", "contract_id": req.contractId}, exc_info=True)
        return _error(500, "Failed to process signature request", str(e))
    return result.model_dump()

@app.get("/signatures")
async def signature_status(contractId: Optional[int] = None):
    _init_once()
    if contractId is None:
        return _error(400, "Contract ID is required")
    lifecycle: SignatureLifecycleManager = _state["lifecycle"]
    try:
        view = await lifecycle.get_status(contractId)
    except ContractOpsError:
        raise
    except Exception as e:
        log.error("Status check failed", extra={"component": "api", "event": "error", "contract_id": contractId}, exc_info=True)
        return _error(500, "Failed to check status", str(e))
    return view.model_dump()

@app.post("/signatures/webhook")
async def signature_webhook(request: Request):
    _init_once()
    s: COSettings = _state["s"]
    body = await request.body()
    signature = request.headers.get("x-esignatures-signature") or request.headers.get("signature")
    if not verify_webhook_signature(body, signature, s.webhook_secret):
        log.warning("Invalid webhook signature", extra={"component": "api", "event": "webhook_rejected"})
        return _error(401, "Invalid signature")
    try:
        payload = json.loads(body)
    except ValueError as e:
        return _error(400, "Invalid JSON payload", str(e))
    if not isinstance(payload, dict):
        return _error(400, "Invalid JSON payload")
    lifecycle: SignatureLifecycleManager = _state["lifecycle"]
    return await lifecycle.handle_webhook(payload)
