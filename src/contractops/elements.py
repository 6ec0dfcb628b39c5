from __future__ import annotations
import html
from typing import Any, Dict, List
import regex as re

Element = Dict[str, Any]

INITIALS_TOKEN = "{{initials}}"
ACK_TEXT = "Please initial below to acknowledge you have read and understood the above section:"

_SECTION_START_RE = re.compile(r'<div class="contract-section"[^>]*>')
_H3_RE = re.compile(r"<h3[^>]*>([\s\S]*?)</h3>")
_SECTION_BODY_RE = re.compile(r'<div class="section-content"[^>]*>')
_SECTION_TAIL_RE = re.compile(r"(?:\s*</div>){1,2}\s*$")
_BLOCK_RE = re.compile(r"<table[^>]*>[\s\S]*?</table>|<ul[^>]*>[\s\S]*?</ul>|<p[^>]*>[\s\S]*?</p>")
_ROW_RE = re.compile(r"<tr[^>]*>([\s\S]*?)</tr>")
_CELL_RE = re.compile(r"<t([hd])([^>]*)>([\s\S]*?)</t[hd]>")
_LI_RE = re.compile(r"<li[^>]*>([\s\S]*?)</li>")
_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")
_RIGHT_RE = re.compile(r"text-align:\s*right")

def strip_html(fragment: str) -> str:
    text = _TAG_RE.sub("", fragment)
    text = html.unescape(text).replace("\u00a0", " ")
    return _WS_RE.sub(" ", text).strip()

def table_element(table_html: str) -> Element | None:
    rows = []
    for row in _ROW_RE.finditer(table_html):
        cells = []
        for kind, attrs, inner in _CELL_RE.findall(row.group(1)):
            cell: Element = {"text": strip_html(inner)}
            if kind == "h":
                cell["styles"] = ["bold"]
            if _RIGHT_RE.search(attrs):
                cell["alignment"] = "right"
            cells.append(cell)
        if cells:
            rows.append(cells)
    if not rows:
        return None
    return {"type": "table", "table_cells": rows}

def text_elements(fragment: str) -> List[Element]:
    """Paragraphs, lists and tables in document order; loose text becomes a paragraph."""
    out: List[Element] = []

    def loose(text: str):
        t = strip_html(text)
        if t:
            out.append({"type": "text_normal", "text": t})

    pos = 0
    for m in _BLOCK_RE.finditer(fragment):
        loose(fragment[pos:m.start()])
        block = m.group(0)
        if block.startswith("<table"):
            el = table_element(block)
            if el:
                out.append(el)
        elif block.startswith("<ul"):
            for li in _LI_RE.findall(block):
                t = strip_html(li)
                if t:
                    out.append({"type": "unordered_list_item", "text": t})
        else:
            loose(block)
        pos = m.end()
    loose(fragment[pos:])
    return out

def section_elements(chunk: str) -> List[Element]:
    starts = [m.start() for m in _SECTION_START_RE.finditer(chunk)]
    if not starts:
        return text_elements(chunk)

    out = text_elements(chunk[:starts[0]])
    for i, start in enumerate(starts):
        end = starts[i + 1] if i + 1 < len(starts) else len(chunk)
        section = chunk[start:end]
        title = _H3_RE.search(section)
        if title:
            out.append({"type": "text_header_two", "text": strip_html(title.group(1))})
        body = _SECTION_BODY_RE.search(section)
        inner = section[body.end():] if body else section[_SECTION_START_RE.match(section).end():]
        out.extend(text_elements(_SECTION_TAIL_RE.sub("", inner)))
    return out

def _initial_field(n: int) -> List[Element]:
    return [
        {"type": "text_normal", "text": ACK_TEXT, "text_styles": [{"offset": 0, "length": len(ACK_TEXT), "style": "bold"}]},
        {
            "type": "signer_field_text",
            "text": f"Required Initial #{n}",
            "signer_field_assigned_to": "first_signer",
            "signer_field_required": "yes",
            "signer_field_id": f"initial_{n}",
            "signer_field_placeholder_text": "Your initials",
        },
        {"type": "text_normal", "text": " "},
    ]

def document_elements(title: str, content: str) -> List[Element]:
    """Convert compiled contract HTML into the provider's template elements.

    Every ``{{initials}}`` marker becomes a required initials field for the
    first signer, numbered from 1.
    """
    elements: List[Element] = [{"type": "text_header_one", "text": title}]
    chunks = (content or "").split(INITIALS_TOKEN)
    for i, chunk in enumerate(chunks):
        if chunk.strip():
            elements.extend(section_elements(chunk))
        if i < len(chunks) - 1:
            elements.extend(_initial_field(i + 1))
    return elements
