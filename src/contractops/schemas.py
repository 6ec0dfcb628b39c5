from __future__ import annotations
from enum import Enum
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator

Amount = Optional[Union[float, str]]
RecordId = Optional[Union[int, str]]
DateLike = Optional[Union[datetime, date, str]]

class ContractStatus(str, Enum):
    draft = "draft"
    pending_signature = "pending_signature"
    signed = "signed"
    cancelled = "cancelled"
    expired = "expired"

class SignatureStatus(str, Enum):
    draft = "draft"
    sent = "sent"
    signed = "signed"
    declined = "declined"
    expired = "expired"

TERMINAL_SIGNATURE_STATUSES = frozenset({SignatureStatus.signed.value, SignatureStatus.declined.value, SignatureStatus.expired.value})

class BillingPeriod(str, Enum):
    monthly = "monthly"
    yearly = "yearly"
    one_time = "one_time"

def coerce_billing_period(value: Any) -> BillingPeriod:
    if isinstance(value, BillingPeriod):
        return value
    if not value:
        return BillingPeriod.monthly
    normalized = str(value).strip().lower().replace("-", "_")
    try:
        return BillingPeriod(normalized)
    except ValueError:
        return BillingPeriod.one_time

class Contract(BaseModel):
    model_config = ConfigDict(extra="allow", use_enum_values=True)

    id: Optional[int] = None
    title: str = ""
    proposal_id: Optional[int] = None
    company_id: Optional[int] = None
    author_id: Optional[int] = None
    content: Optional[str] = None
    status: ContractStatus = ContractStatus.draft
    signature_status: Optional[SignatureStatus] = None
    signature_document_id: Optional[str] = None
    signature_platform: Optional[str] = None
    signature_sent_at: Optional[str] = None
    signature_signed_at: Optional[str] = None
    signature_metadata: Dict[str, Any] = Field(default_factory=dict)
    total_amount: float = 0.0
    billing_period: BillingPeriod = BillingPeriod.monthly
    start_date: Optional[str] = None
    due_date: Optional[str] = None
    platform: Optional[str] = None
    parent_id: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

class ContractPart(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[int] = None
    title: Optional[str] = ""
    content: Optional[str] = ""

class ContractPartLink(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[int] = None
    contract_id: int
    contractpart_id: int
    order_index: int = 0
    is_included: bool = True
    custom_content: Optional[str] = None

class Deliverable(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: Optional[str] = None
    name: Optional[str] = None

class Product(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: RecordId = None
    title: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    price: Amount = None
    yearly_price: Amount = None
    platform: Optional[str] = None
    is_addon: bool = False
    payment_split_count: Optional[int] = None
    deliverables: Optional[List[Union[Deliverable, str]]] = None

class Milestone(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: RecordId = None
    title: Optional[str] = None
    description: Optional[str] = None
    company_id: RecordId = None
    order_index: Optional[int] = None

class Payment(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: RecordId = None
    contract_id: RecordId = None
    title: Optional[str] = ""
    amount: Amount = None
    due_date: DateLike = None
    alt_due_date: DateLike = None
    order_index: Optional[int] = 0
    frequency: Optional[str] = None
    is_recurring: Optional[bool] = None
    status: Optional[str] = None

class Company(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[int] = None
    title: Optional[str] = None

class ProposalProduct(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[int] = None
    product_id: Optional[int] = None
    price: Amount = None
    is_addon: bool = False
    product: Optional[Product] = None

class Proposal(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[int] = None
    title: Optional[str] = None
    tier: Optional[str] = None
    status: Optional[str] = None
    company_id: Optional[int] = None
    company: Optional[Company] = None
    author: Optional[Dict[str, Any]] = None
    billing_period: Optional[str] = None
    total_amount: Amount = None
    proposal_products: List[ProposalProduct] = Field(default_factory=list)

class RelatedData(BaseModel):
    products: List[Product] = Field(default_factory=list)
    selectedMilestones: List[Milestone] = Field(default_factory=list)
    payments: List[Payment] = Field(default_factory=list)

    @field_validator("products", "selectedMilestones", "payments", mode="before")
    @classmethod
    def _none_as_empty(cls, v):
        return [] if v is None else v

class Signer(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = ""
    email: Optional[str] = ""

class SendResult(BaseModel):
    success: bool
    documentId: Optional[str] = None
    signUrl: Optional[str] = None
    platform: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    canResend: bool = False

class SignatureStatusView(BaseModel):
    contractId: int
    documentId: Optional[str] = None
    platform: Optional[str] = None
    status: Optional[str] = None
    sentAt: Optional[str] = None
    signedAt: Optional[str] = None
