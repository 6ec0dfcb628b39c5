from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Union
import logging

from dateutil.relativedelta import relativedelta
from pydantic import ValidationError as SchemaError

from contractops.compiler import compile_contract
from contractops.config import COSettings
from contractops.errors import AuthenticationError, ConfigurationError, NotFoundError, ValidationError
from contractops.numbers import sum_or_zero
from contractops.payments import selected_lines
from contractops.persistence import COMPANY_CONTACTS, CONTRACT_MILESTONES, CONTRACT_PRODUCTS, PersistenceGateway, Relation, fetch_related, link
from contractops.schemas import BillingPeriod, Contract, ContractStatus, Product, Proposal, ProposalProduct, RelatedData, coerce_billing_period
from contractops.tracing import get_tracer

log = logging.getLogger("contractops.orchestrator")
tracer = get_tracer("contractops.orchestrator")

PRODUCT_DELIVERABLES = Relation("product_deliverable", "product_id", "deliverable_id", "deliverable")
DEFAULT_PLATFORM = "wordpress"
ONE_TIME_TERM_DAYS = 30

Compiler = Callable[[PersistenceGateway, Dict[str, Any], RelatedData], Awaitable[str]]

class ActorContext(Protocol):
    async def resolve(self) -> Any: ...

@dataclass(frozen=True)
class StaticActor:
    contact_id: Optional[int]

    async def resolve(self) -> int:
        if self.contact_id is None:
            raise AuthenticationError("Unable to identify current user")
        return self.contact_id

@dataclass
class GenerationOptions:
    billing_period: BillingPeriod = BillingPeriod.monthly
    selected_products: List[Any] = field(default_factory=list)

def calculate_due_date(billing_period: BillingPeriod, today: date) -> date:
    if billing_period == BillingPeriod.yearly:
        return today + relativedelta(years=1)
    if billing_period == BillingPeriod.monthly:
        return today + relativedelta(months=1)
    return today + timedelta(days=ONE_TIME_TERM_DAYS)

def main_platform(lines: Sequence[ProposalProduct]) -> str:
    main = next((pp for pp in lines if not pp.is_addon), None)
    if main and main.product and main.product.platform:
        return main.product.platform
    return DEFAULT_PLATFORM

def basic_contract_content(contract: Dict[str, Any], proposal: Proposal) -> str:
    company = (proposal.company.title if proposal.company else None) or "Client"
    total = contract.get("total_amount") or proposal.total_amount or 0
    billing = contract.get("billing_period") or "monthly"
    return f"""
    <div class="contract-content">
      <h1>Project Contract</h1>
      <h2>Agreement Details</h2>
      <p>This contract outlines the agreement between our company and <strong>{company}</strong> for the proposed project services.</p>
      <h2>Project Scope</h2>
      <p>Based on the approved proposal "{proposal.title or ''}", this contract covers the delivery of the agreed services and deliverables.</p>
      <h2>Investment</h2>
      <p>Total project investment: <strong>${total}</strong></p>
      <p>Billing frequency: <strong>{billing}</strong></p>
      <h2>Terms and Conditions</h2>
      <p>Payment terms and project timeline will be finalized upon contract execution.</p>
      <h2>Client Information</h2>
      <p><strong>Client Name:</strong> {{{{client_name}}}}</p>
      <p><strong>Date:</strong> {{{{today}}}}</p>
      <h2>Signatures</h2>
      <p><strong>Client Signature:</strong> {{{{initials}}}}</p>
      <p><strong>Date:</strong> {{{{today}}}}</p>
    </div>
    """

async def load_proposal(store: PersistenceGateway, proposal_id: Any) -> Proposal:
    row = await store.get("proposal", proposal_id)
    if not row:
        raise NotFoundError("Proposal not found", details=f"proposal {proposal_id}")
    company = await store.get("company", row.get("company_id")) if row.get("company_id") is not None else None
    author = await store.get("contact", row.get("author_id")) if row.get("author_id") is not None else None
    lines = []
    for pp in await store.select("proposal_product", {"proposal_id": proposal_id}, order_by="order"):
        product = await store.get("product", pp.get("product_id"))
        lines.append({**pp, "product": product})
    return Proposal.model_validate({**row, "company": company, "author": author, "proposal_products": lines})

class ContractGenerator:
    def __init__(
        self,
        store: Optional[PersistenceGateway],
        settings: COSettings,
        compiler: Compiler = compile_contract,
        today: Callable[[], date] = date.today,
    ):
        self._store = store
        self._s = settings
        self._compile = compiler
        self._today = today

    def _require_store(self) -> PersistenceGateway:
        if self._store is None:
            raise ConfigurationError("Persistence gateway is required", details="ContractGenerator was built without a store")
        return self._store

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    async def generate_contract_from_proposal(
        self,
        proposal: Union[Proposal, Dict[str, Any]],
        options: GenerationOptions,
        actor: ActorContext,
    ) -> Dict[str, Any]:
        store = self._require_store()
        if not isinstance(proposal, Proposal):
            proposal = Proposal.model_validate(proposal)
        if proposal.id is None:
            raise ValidationError("Proposal id is required")

        with tracer.start_as_current_span("generate_contract") as span:
            span.set_attribute("proposal_id", str(proposal.id))
            log.info("Starting contract generation", extra={"component": "orchestrator", "event": "start", "proposal_id": proposal.id})

            author_id = await actor.resolve()
            period = coerce_billing_period(options.billing_period)
            lines = selected_lines(proposal, options.selected_products)
            today = self._today()
            now = self._now()

            draft = Contract(
                title=f"{proposal.title or 'Proposal'} - Contract",
                company_id=proposal.company_id,
                proposal_id=proposal.id,
                author_id=author_id,
                status=ContractStatus.draft,
                billing_period=period,
                total_amount=sum_or_zero(pp.price for pp in lines),
                platform=main_platform(proposal.proposal_products),
                start_date=today.isoformat(),
                due_date=calculate_due_date(period, today).isoformat(),
                created_at=now,
                updated_at=now,
            )
            contract = await store.insert("contract", draft.model_dump(exclude={"id"}))
            span.set_attribute("contract_id", str(contract["id"]))
            log.info("Contract created", extra={"component": "orchestrator", "event": "created", "contract_id": contract["id"], "proposal_id": proposal.id})

            product_ids = [pp.product_id for pp in lines if pp.product_id is not None]
            try:
                linked = await link(store, CONTRACT_PRODUCTS, contract["id"], product_ids)
                log.info(f"Linked {len(linked)} products", extra={"component": "orchestrator", "event": "products_linked", "contract_id": contract["id"]})
            except Exception:
                log.error("Error linking products", extra={"component": "orchestrator", "event": "link_failed", "contract_id": contract["id"]}, exc_info=True)

            related = await self.fetch_related_data(contract, lines)
            return await self._compile_and_store(contract, proposal, related)

    async def _compile_and_store(self, contract: Dict[str, Any], proposal: Proposal, related: RelatedData) -> Dict[str, Any]:
        store = self._require_store()
        try:
            content = await self._compile(store, contract, related)
        except Exception:
            log.error("Content generation failed; using basic template", extra={"component": "orchestrator", "event": "compile_failed", "contract_id": contract["id"]}, exc_info=True)
            content = basic_contract_content(contract, proposal)

        try:
            contract = await store.update("contract", contract["id"], {"content": content, "updated_at": self._now()})
        except Exception:
            log.error("Error saving contract content", extra={"component": "orchestrator", "event": "content_save_failed", "contract_id": contract["id"]}, exc_info=True)
            contract = {**contract, "content": content}
        return contract

    async def _deliverables(self, product: Optional[Product], product_id: Any) -> List[Any]:
        if product is not None and product.deliverables is not None:
            return list(product.deliverables)
        return [target for _, target in await fetch_related(self._require_store(), PRODUCT_DELIVERABLES, product_id) if target]

    async def fetch_related_data(self, contract: Dict[str, Any], lines: Sequence[ProposalProduct]) -> RelatedData:
        store = self._require_store()
        products: List[Dict[str, Any]] = []
        milestones: List[Dict[str, Any]] = []
        payments: List[Dict[str, Any]] = []
        try:
            for pp in lines:
                products.append({
                    "id": pp.product_id,
                    "title": (pp.product.title if pp.product else None) or "Product",
                    "description": (pp.product.description if pp.product else None) or "",
                    "price": pp.price,
                    "deliverables": await self._deliverables(pp.product, pp.product_id),
                })
            # milestones linked to the contract win over the company's list
            milestones = [m for _, m in await fetch_related(store, CONTRACT_MILESTONES, contract["id"]) if m]
            milestones = milestones[:self._s.milestone_limit]
            if not milestones and contract.get("company_id") is not None:
                milestones = await store.select(
                    "milestone", {"company_id": contract["company_id"]}, order_by="order_index", limit=self._s.milestone_limit,
                )
            payments = await store.select("payment", {"contract_id": contract["id"]}, order_by="order_index")
        except Exception:
            log.error("Error fetching related data", extra={"component": "orchestrator", "event": "related_failed", "contract_id": contract.get("id")}, exc_info=True)

        try:
            related = RelatedData.model_validate({"products": products, "selectedMilestones": milestones, "payments": payments})
        except SchemaError:
            log.error("Related data failed validation", extra={"component": "orchestrator", "event": "related_invalid", "contract_id": contract.get("id")}, exc_info=True)
            related = RelatedData()

        log.info(
            f"Related data: {len(related.products)} products, {len(related.selectedMilestones)} milestones, {len(related.payments)} payments",
            extra={"component": "orchestrator", "event": "related_fetched", "contract_id": contract.get("id")},
        )
        return related

    async def regenerate_content(self, contract_id: Any) -> Dict[str, Any]:
        store = self._require_store()
        contract = await store.get("contract", contract_id)
        if not contract:
            raise NotFoundError("Contract not found", details=f"contract {contract_id}")
        if contract.get("proposal_id") is None:
            raise ValidationError("Contract is not linked to a proposal")

        proposal = await load_proposal(store, contract["proposal_id"])
        linked_ids = [link_row.get("product_id") for link_row, _ in await fetch_related(store, CONTRACT_PRODUCTS, contract["id"])]
        lines = selected_lines(proposal, linked_ids)
        related = await self.fetch_related_data(contract, lines)
        log.info("Regenerating contract content", extra={"component": "orchestrator", "event": "regenerate", "contract_id": contract["id"]})
        return await self._compile_and_store(contract, proposal, related)

    async def approve_proposal(self, proposal: Proposal, billing_period: BillingPeriod) -> None:
        try:
            await self._require_store().update("proposal", proposal.id, {
                "status": "approved",
                "billing_period": billing_period.value,
                "updated_at": self._now(),
            })
        except Exception:
            log.error("Error updating proposal", extra={"component": "orchestrator", "event": "approve_failed", "proposal_id": proposal.id}, exc_info=True)

    async def contract_signers(self, company_id: Any) -> List[Dict[str, Any]]:
        signers = []
        for _, contact in await fetch_related(self._require_store(), COMPANY_CONTACTS, company_id):
            if not contact or not contact.get("email"):
                continue
            name = " ".join(p for p in (contact.get("first_name"), contact.get("last_name")) if p) or contact.get("title") or ""
            signers.append({"id": contact.get("id"), "name": name, "email": contact["email"]})
        return signers
