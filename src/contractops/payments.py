from __future__ import annotations
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

from dateutil.relativedelta import relativedelta

from contractops.errors import ValidationError
from contractops.numbers import parse_float
from contractops.persistence import PersistenceGateway
from contractops.schemas import BillingPeriod, Payment, Proposal, ProposalProduct, coerce_billing_period

log = logging.getLogger("contractops.payments")

def selected_lines(proposal: Proposal, selected_products: Optional[Sequence[Any]] = None) -> List[ProposalProduct]:
    selected = list(selected_products or [])
    return [pp for pp in proposal.proposal_products if not selected or pp.product_id in selected]

def split_amount(total: float, parts: int) -> List[Decimal]:
    """Equal installments in cents; the last one takes the rounding remainder."""
    total_d = Decimal(repr(float(total))).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    each = (total_d / parts).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    out = [each] * (parts - 1)
    out.append(total_d - each * (parts - 1))
    return out

def line_price(pp: ProposalProduct, billing_period: BillingPeriod) -> Optional[Tuple[float, Optional[str]]]:
    """(amount, frequency) for one proposal line, or None when it has no price for the period.

    A positive negotiated line price wins over the catalogue price. One-time
    lines carry no frequency.
    """
    one_time = billing_period == BillingPeriod.one_time
    custom = parse_float(pp.price)
    if custom > 0:
        return custom, None if one_time else billing_period.value
    product = pp.product
    if billing_period == BillingPeriod.yearly and parse_float(product.yearly_price) > 0:
        return parse_float(product.yearly_price), BillingPeriod.yearly.value
    if billing_period == BillingPeriod.monthly and parse_float(product.price) > 0:
        return parse_float(product.price), BillingPeriod.monthly.value
    if one_time:
        return parse_float(product.price), None
    return None

def _first_due(frequency: Optional[str], today: date) -> date:
    if frequency == BillingPeriod.yearly.value:
        return today + relativedelta(years=1)
    if frequency == BillingPeriod.monthly.value:
        return today + relativedelta(months=1)
    return today

def plan_payments(lines: Sequence[ProposalProduct], billing_period: BillingPeriod, today: date) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for pp in lines:
        if pp.product is None:
            log.warning("Skipping proposal line without product", extra={"component": "payments", "event": "line_skipped"})
            continue
        title = pp.product.title or pp.product.name or "Product"
        priced = line_price(pp, billing_period)
        if priced is None:
            log.warning(
                f"No price found for {title} with billing period {billing_period.value}",
                extra={"component": "payments", "event": "line_unpriced"},
            )
            continue
        amount, frequency = priced
        splits = pp.product.payment_split_count or 1

        if frequency is None and splits > 1:
            for i, part in enumerate(split_amount(amount, splits)):
                rows.append({
                    "title": f"{title} - Payment {i + 1} of {splits}",
                    "amount": float(part),
                    "due_date": (today + relativedelta(months=i)).isoformat(),
                    "frequency": None,
                    "is_recurring": False,
                })
            continue

        rows.append({
            "title": f"{title} ({frequency})" if frequency else title,
            "amount": float(split_amount(amount, 1)[0]),
            "due_date": _first_due(frequency, today).isoformat(),
            "frequency": frequency,
            "is_recurring": frequency is not None,
        })
    return rows

async def generate_payments_from_proposal(
    store: PersistenceGateway,
    proposal: Proposal,
    contract_id: Any,
    billing_period: Any = None,
    selected_products: Optional[Sequence[Any]] = None,
    today: Optional[date] = None,
) -> List[Payment]:
    period = coerce_billing_period(billing_period or proposal.billing_period)
    lines = selected_lines(proposal, selected_products)
    if not lines:
        raise ValidationError("No products found for this proposal", details=f"proposal {proposal.id}")
    planned = plan_payments(lines, period, today or date.today())
    if not planned:
        raise ValidationError("No valid payments could be generated", details=f"billing period {period.value}")

    removed = await store.delete_where("payment", {"contract_id": contract_id})
    rows = [
        {**row, "contract_id": contract_id, "order_index": i + 1, "status": "pending", "alt_due_date": None}
        for i, row in enumerate(planned)
    ]
    inserted = await store.insert_many("payment", rows)
    log.info(
        f"Generated {len(inserted)} payments (replaced {removed})",
        extra={"component": "payments", "event": "generated", "contract_id": contract_id, "proposal_id": proposal.id},
    )
    return [Payment.model_validate(r) for r in inserted]
