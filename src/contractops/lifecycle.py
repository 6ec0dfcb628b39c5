from __future__ import annotations
import asyncio
import hashlib
import hmac
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from contractops.config import COSettings
from contractops.errors import GatewayError, NotFoundError, PersistenceError, ValidationError
from contractops.persistence import PersistenceGateway
from contractops.schemas import TERMINAL_SIGNATURE_STATUSES, ContractStatus, SendResult, SignatureStatus, SignatureStatusView, Signer
from contractops.signing import SigningDocument, SigningGateway
from contractops.tracing import get_tracer

log = logging.getLogger("contractops.lifecycle")
tracer = get_tracer("contractops.lifecycle")

EMAIL_RE = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")

PROVIDER_STATUS_MAP = {
    "pending": SignatureStatus.sent.value,
    "completed": SignatureStatus.signed.value,
    "declined": SignatureStatus.declined.value,
    "cancelled": SignatureStatus.declined.value,
    "expired": SignatureStatus.expired.value,
}

WEBHOOK_EVENT_STATUS = {
    "document.signed": SignatureStatus.signed.value,
    "document.declined": SignatureStatus.declined.value,
    "document.expired": SignatureStatus.expired.value,
}

_RANK = {None: 0, SignatureStatus.draft.value: 0, SignatureStatus.sent.value: 1}

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

def map_provider_status(provider_status: Optional[str]) -> Optional[str]:
    if provider_status is None:
        return None
    return PROVIDER_STATUS_MAP.get(provider_status, provider_status)

def validate_signers(signers: Iterable[Any]) -> List[Signer]:
    parsed = [s if isinstance(s, Signer) else Signer.model_validate(s or {}) for s in (signers or [])]
    if not parsed:
        raise ValidationError("At least one signer is required")
    invalid = []
    for i, s in enumerate(parsed):
        name = (s.name or "").strip()
        email = (s.email or "").strip()
        if not name or not EMAIL_RE.fullmatch(email):
            invalid.append({"index": i, "name": s.name, "email": s.email})
    if invalid:
        labels = ", ".join(f"{d['name'] or '?'} <{d['email'] or ''}>" for d in invalid)
        raise ValidationError("All signers must have a name and a valid email", details=f"Invalid signers: {labels}", invalid_signers=invalid)
    return parsed

def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature.strip().lower(), expected)

def _coerce_id(value: Any) -> Any:
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return value

class SignatureLifecycleManager:
    """Sends contracts to the signing provider and reconciles signature status.

    Status moves forward only (draft -> sent -> signed|declined|expired); once a
    terminal status is stored, neither polling nor webhooks change it again.
    """

    def __init__(
        self,
        store: PersistenceGateway,
        gateways: Callable[[str], SigningGateway],
        settings: COSettings,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._gateways = gateways
        self._s = settings
        self._clock = clock

    def _now(self) -> str:
        return self._clock().isoformat()

    async def _load(self, contract_id: Any) -> Dict[str, Any]:
        contract = await self._store.get("contract", _coerce_id(contract_id))
        if not contract:
            raise NotFoundError("Contract not found", details=f"contract {contract_id}")
        return contract

    async def send_contract(
        self,
        contract: Dict[str, Any],
        signers: Iterable[Any],
        force_resend: bool = False,
        platform: Optional[str] = None,
        sent_by: str = "system",
    ) -> SendResult:
        valid = validate_signers(signers)
        platform = platform or contract.get("signature_platform") or self._s.default_platform
        gateway = self._gateways(platform)

        status = contract.get("signature_status")
        if status in TERMINAL_SIGNATURE_STATUSES:
            raise ValidationError(f"Contract is already {status}", details=f"signature_status={status}")
        if status == SignatureStatus.sent.value and not force_resend:
            raise ValidationError(
                "Contract is already sent for signature",
                details=f"documentId={contract.get('signature_document_id')}; pass forceResend to send again",
            )
        if not contract.get("content"):
            raise ValidationError("Contract has no content to sign")

        contract_id = contract["id"]
        signer_rows = [{"name": s.name.strip(), "email": s.email.strip()} for s in valid]
        await self._store.update("contract", contract_id, {
            "signature_platform": platform,
            "signature_metadata": {
                "signers": signer_rows,
                "platform": platform,
                "sent_by": sent_by,
                "sent_at": self._now(),
                "force_resend": force_resend,
            },
        })

        document = SigningDocument(
            title=contract.get("title") or f"Contract {contract_id}",
            html_content=contract["content"],
            external_reference_id=contract_id,
            webhook_url=self._s.webhook_url,
            signers=signer_rows,
        )
        with tracer.start_as_current_span("send_contract") as span:
            span.set_attribute("contract_id", str(contract_id))
            span.set_attribute("platform", platform)
            try:
                sent = await asyncio.wait_for(gateway.send(document), timeout=self._s.provider_deadline_s)
            except (GatewayError, asyncio.TimeoutError) as e:
                msg = e.message if isinstance(e, GatewayError) else "Signing provider timed out"
                log.error("Send for signature failed", extra={"component": "lifecycle", "event": "send_failed", "contract_id": contract_id, "platform": platform}, exc_info=True)
                result = SendResult(success=False, platform=platform, error=msg, canResend=True)
                await self._audit(contract_id, platform, signer_rows, result)
                return result

        now = self._now()
        await self._store.update("contract", contract_id, {
            "signature_document_id": sent.document_id,
            "signature_status": SignatureStatus.sent.value,
            "signature_sent_at": now,
            "status": ContractStatus.pending_signature.value,
            "updated_at": now,
        })
        log.info("Contract sent for signature", extra={"component": "lifecycle", "event": "sent", "contract_id": contract_id, "document_id": sent.document_id, "platform": platform})
        result = SendResult(
            success=True,
            documentId=sent.document_id,
            signUrl=sent.sign_url,
            platform=platform,
            message="Contract sent for signature successfully",
            canResend=True,
        )
        await self._audit(contract_id, platform, signer_rows, result)
        return result

    async def send_contract_by_id(self, contract_id: Any, signers: Iterable[Any], force_resend: bool = False, platform: Optional[str] = None) -> SendResult:
        # signers are checked before the contract is even loaded
        validate_signers(signers)
        contract = await self._load(contract_id)
        return await self.send_contract(contract, signers, force_resend=force_resend, platform=platform)

    async def _audit(self, contract_id: Any, platform: str, signers: List[Dict[str, str]], result: SendResult) -> None:
        try:
            await self._store.insert("signature_log", {
                "contract_id": contract_id,
                "platform": platform,
                "signers_count": len(signers),
                "signers_data": signers,
                "success": result.success,
                "document_id": result.documentId,
                "error_message": result.error,
                "created_at": self._now(),
            })
        except PersistenceError:
            log.warning("Failed to write signature log", extra={"component": "lifecycle", "event": "audit_failed", "contract_id": contract_id}, exc_info=True)

    async def reconcile(self, contract: Dict[str, Any], new_status: Optional[str], extra: Optional[Dict[str, Any]] = None) -> Tuple[Optional[str], bool]:
        """Store ``new_status`` if it moves the contract forward. Returns (status, changed)."""
        current = contract.get("signature_status")
        if not new_status or current in TERMINAL_SIGNATURE_STATUSES or new_status == current:
            return current, False
        if new_status in _RANK and _RANK[new_status] < _RANK.get(current, 0):
            return current, False

        now = self._now()
        changes: Dict[str, Any] = {"signature_status": new_status, "updated_at": now}
        if new_status == SignatureStatus.signed.value:
            changes["signature_signed_at"] = now
            changes["status"] = ContractStatus.signed.value
        elif new_status == SignatureStatus.declined.value:
            changes["signature_declined_at"] = now
        elif new_status == SignatureStatus.expired.value:
            changes["signature_expired_at"] = now
            changes["status"] = ContractStatus.expired.value
        changes.update(extra or {})

        updated = await self._store.update("contract", contract["id"], changes)
        contract.update(updated)
        log.info("Signature status changed", extra={"component": "lifecycle", "event": "reconciled", "contract_id": contract["id"], "status": new_status})
        return new_status, True

    async def get_status(self, contract_id: Any) -> SignatureStatusView:
        contract = await self._load(contract_id)
        status = contract.get("signature_status")
        document_id = contract.get("signature_document_id")

        if status == SignatureStatus.sent.value and document_id:
            gateway = self._gateways(contract.get("signature_platform") or self._s.default_platform)
            with tracer.start_as_current_span("poll_status") as span:
                span.set_attribute("contract_id", str(contract["id"]))
                try:
                    provider_status = await asyncio.wait_for(gateway.get_status(document_id), timeout=self._s.provider_deadline_s)
                except asyncio.TimeoutError:
                    log.warning("Status poll timed out", extra={"component": "lifecycle", "event": "poll_timeout", "contract_id": contract["id"]})
                    provider_status = None
            status, _ = await self.reconcile(contract, map_provider_status(provider_status))

        return SignatureStatusView(
            contractId=contract["id"],
            documentId=contract.get("signature_document_id"),
            platform=contract.get("signature_platform"),
            status=status,
            sentAt=contract.get("signature_sent_at"),
            signedAt=contract.get("signature_signed_at"),
        )

    async def handle_webhook(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        event = payload.get("event")
        document = payload.get("document") or {}
        metadata = payload.get("metadata") or document.get("metadata") or {}
        contract_id = metadata.get("contractId")
        if contract_id is None:
            raise ValidationError("Contract ID not found", details="webhook payload carried no metadata.contractId")

        log.info("Webhook received", extra={"component": "lifecycle", "event": event, "contract_id": contract_id, "document_id": document.get("id")})
        contract = await self._load(contract_id)

        if event in WEBHOOK_EVENT_STATUS:
            extra: Dict[str, Any] = {}
            if event == "document.signed" and document.get("signed_pdf_url"):
                extra["signed_document_url"] = document["signed_pdf_url"]
            if event == "document.declined":
                extra["decline_reason"] = document.get("decline_reason") or "Document declined by signer"
            status, changed = await self.reconcile(contract, WEBHOOK_EVENT_STATUS[event], extra)
            return {"success": True, "message": "Webhook processed", "status": status, "changed": changed}

        if event == "document.viewed":
            await self._store.update("contract", contract["id"], {"signature_last_viewed_at": self._now()})
        else:
            log.info("Unhandled webhook event", extra={"component": "lifecycle", "event": event, "contract_id": contract["id"]})
        return {"success": True, "message": "Webhook processed", "status": contract.get("signature_status"), "changed": False}
