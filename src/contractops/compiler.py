from __future__ import annotations
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
import logging
import re

from contractops.numbers import format_amount, format_date, format_usd, sum_or_zero
from contractops.persistence import CONTRACT_PARTS, PersistenceGateway, fetch_related
from contractops.schemas import ContractPart, ContractPartLink, Deliverable, Milestone, Payment, Product, RelatedData
from contractops.tracing import get_tracer

log = logging.getLogger("contractops.compiler")
tracer = get_tracer("contractops.compiler")

_MILESTONES_RE = re.compile(r"{{#each selectedMilestones}}([\s\S]*?){{/each}}")
_PRODUCTS_RE = re.compile(r"{{#each products}}([\s\S]*?){{/each}}")
_ANY_EACH_RE = re.compile(r"{{#each [^}]*}}[\s\S]*?{{/each}}")
PAYMENTS_TOKEN = "{{payments}}"
NO_PAYMENTS_HTML = "<p><em>No payment schedule defined.</em></p>"

_CELL = "border: 1px solid #e5e7eb; padding: 12px;"
_HEAD_CELL = f"{_CELL} font-weight: 600; text-align: left;"

@dataclass(frozen=True)
class RenderablePart:
    title: str
    content: str
    order_index: int = 0
    is_included: bool = True
    part_id: Optional[int] = None

def _as_related(related: Union[RelatedData, Mapping[str, Any], None]) -> RelatedData:
    if isinstance(related, RelatedData):
        return related
    related = related or {}
    return RelatedData.model_validate({
        "products": related.get("products") or [],
        "selectedMilestones": related.get("selectedMilestones") or [],
        "payments": related.get("payments") or [],
    })

def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)

def _deliverable_label(d: Union[Deliverable, str]) -> str:
    if isinstance(d, str):
        return d
    return d.title or d.name or ""

def _deliverables_html(product: Product) -> str:
    items = "".join(f"<li>{_deliverable_label(d)}</li>" for d in (product.deliverables or []))
    return f"<ul>{items}</ul>" if items else ""

def _product_total_html(products: List[Product]) -> str:
    total = sum_or_zero(p.price for p in products)
    return (
        '<div style="margin-top: 2rem; padding: 1rem; background-color: #f0f9ff; border: 2px solid #0ea5e9; border-radius: 8px;">'
        '<h4 style="margin: 0 0 0.5rem 0; font-weight: 600; color: #0c4a6e;">Total Project Cost</h4>'
        f'<p style="margin: 0; font-size: 1.5rem; font-weight: bold; color: #0ea5e9;">${format_amount(total)}</p>'
        "</div>"
    )

def _expand_milestones(body: str, milestones: List[Milestone]) -> str:
    out = []
    for m in milestones:
        item = body.replace("{{title}}", m.title or "")
        item = item.replace("{{description}}", m.description or "")
        out.append(item)
    return "".join(out)

def _expand_products(body: str, products: List[Product]) -> str:
    out = []
    for p in products:
        item = body.replace("{{title}}", p.title or p.name or "")
        item = item.replace("{{description}}", p.description or "")
        item = item.replace("{{deliverables}}", _deliverables_html(p))
        # per-line prices are never shown, only the aggregate below
        item = item.replace("{{price}}", "")
        out.append(item)
    return "".join(out) + _product_total_html(products)

def expand_each_blocks(content: str, related: RelatedData) -> str:
    content = _MILESTONES_RE.sub(lambda m: _expand_milestones(m.group(1), related.selectedMilestones), content)
    content = _PRODUCTS_RE.sub(lambda m: _expand_products(m.group(1), related.products), content)
    return content

def payments_table_html(payments: List[Payment]) -> str:
    if not payments:
        return NO_PAYMENTS_HTML

    rows = []
    for p in payments:
        due = format_date(p.due_date) if p.due_date else ""
        alt = format_date(p.alt_due_date) if isinstance(p.alt_due_date, date) else (p.alt_due_date or "")
        shown = due or alt or "TBD"
        rows.append(
            "<tr>"
            f'<td style="{_CELL}">{p.title or ""}</td>'
            f'<td style="{_CELL} text-align: right; font-weight: 600; color: #059669;">{format_usd(p.amount)}</td>'
            f'<td style="{_CELL}">{shown}</td>'
            f'<td style="{_CELL}">{alt if (alt and due) else "—"}</td>'
            "</tr>"
        )
    total = sum_or_zero(p.amount for p in payments)
    header = "".join(f'<th style="{_HEAD_CELL}">{h}</th>' for h in ("Payment", "Amount", "Due Date", "Alternative Due Date"))
    return (
        '<table style="border-collapse: collapse; margin: 2rem 0; width: 100%; border: 2px solid #d1d5db;">'
        f'<thead><tr style="background-color: #f9fafb;">{header}</tr></thead>'
        "<tbody>"
        + "".join(rows)
        + '<tr style="background-color: #f0f9ff; border-top: 2px solid #0ea5e9;">'
        f'<td style="{_CELL} font-weight: bold; color: #0c4a6e;">Total Project Cost</td>'
        f'<td style="{_CELL} text-align: right; font-weight: bold; color: #0ea5e9; font-size: 1.125rem;">{format_usd(total)}</td>'
        f'<td style="{_CELL}"></td>'
        f'<td style="{_CELL}"></td>'
        "</tr></tbody></table>"
    )

def _insert_payments(content: str, payments: List[Payment]) -> str:
    if PAYMENTS_TOKEN not in content:
        return content
    table = payments_table_html(payments)
    out = []
    pos = 0
    for m in _ANY_EACH_RE.finditer(content):
        out.append(content[pos:m.start()].replace(PAYMENTS_TOKEN, table))
        out.append(m.group(0))
        pos = m.end()
    out.append(content[pos:].replace(PAYMENTS_TOKEN, table))
    return "".join(out)

def _substitute_fields(text: str, record: Mapping[str, Any]) -> str:
    for key, value in record.items():
        if value is None:
            continue
        text = text.replace("{{" + str(key) + "}}", _stringify(value))
    return text

def render_template(template: str, record: Mapping[str, Any], related: Union[RelatedData, Mapping[str, Any], None]) -> str:
    """Expand one part template: each-blocks, then ``{{payments}}``, then contract fields.

    Each-blocks naming an unknown array stay unexpanded and never receive the
    payments table; contract fields are still filled in everywhere.
    """
    rd = _as_related(related)
    content = expand_each_blocks(template or "", rd)
    content = _insert_payments(content, rd.payments)
    return _substitute_fields(content, record)

def _section_html(title: str, body: str) -> str:
    return (
        '<div class="contract-section" style="margin-bottom: 2rem;">'
        f'<h3 style="font-size: 1.25rem; font-weight: 600; margin-bottom: 1rem; color: #1f2937;">{title}</h3>'
        f'<div class="section-content" style="color: #374151; line-height: 1.6;">{body}</div>'
        "</div>"
    )

def render_contract(record: Mapping[str, Any], parts: Iterable[RenderablePart], related: Union[RelatedData, Mapping[str, Any], None] = None) -> str:
    rd = _as_related(related)
    included = sorted((p for p in parts if p.is_included), key=lambda p: p.order_index)
    return "\n".join(_section_html(p.title, render_template(p.content, record, rd)) for p in included)

async def load_contract_parts(gateway: PersistenceGateway, contract_id: Any) -> List[RenderablePart]:
    parts = []
    for link_row, part_row in await fetch_related(gateway, CONTRACT_PARTS, contract_id):
        if part_row is None:
            continue
        link = ContractPartLink.model_validate(link_row)
        if not link.is_included:
            continue
        part = ContractPart.model_validate(part_row)
        parts.append(RenderablePart(
            title=part.title or "",
            content=link.custom_content if link.custom_content is not None else (part.content or ""),
            order_index=link.order_index,
            part_id=part.id,
        ))
    return parts

async def compile_contract(gateway: PersistenceGateway, record: Dict[str, Any], related: Union[RelatedData, Mapping[str, Any], None] = None) -> str:
    with tracer.start_as_current_span("compile_contract") as span:
        span.set_attribute("contract_id", str(record.get("id")))
        parts = await load_contract_parts(gateway, record.get("id"))
        if not parts:
            log.info("No contract parts", extra={"component": "compiler", "event": "empty", "contract_id": record.get("id")})
            return ""
        html = render_contract(record, parts, related)
        span.set_attribute("parts", len(parts))
        log.info("Compiled contract", extra={"component": "compiler", "event": "compiled", "contract_id": record.get("id")})
        return html
