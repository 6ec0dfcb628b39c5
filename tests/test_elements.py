from contractops.compiler import RenderablePart, render_contract
from contractops.elements import document_elements, strip_html

def test_strip_html_decodes_entities():
    assert strip_html("<p>Fish &amp; <b>Chips</b>&nbsp;&nbsp;now</p>") == "Fish & Chips now"

def test_sections_paragraphs_lists_and_tables():
    parts = [
        RenderablePart(title="Scope", content="<p>We build {{title}}.</p>{{#each products}}{{title}}{{deliverables}}{{/each}}", order_index=0),
        RenderablePart(title="Payments", content="{{payments}}", order_index=1),
    ]
    related = {
        "products": [{"title": "Website", "price": "100", "deliverables": [{"title": "Homepage"}]}],
        "payments": [{"title": "Deposit", "amount": "100", "due_date": "2024-01-01"}],
    }
    html = render_contract({"title": "Acme site"}, parts, related)
    els = document_elements("Acme Contract", html)

    assert els[0] == {"type": "text_header_one", "text": "Acme Contract"}
    headers = [e["text"] for e in els if e["type"] == "text_header_two"]
    assert headers == ["Scope", "Payments"]
    texts = [e["text"] for e in els if e["type"] == "text_normal"]
    assert "We build Acme site." in texts
    assert {"type": "unordered_list_item", "text": "Homepage"} in els

    table = next(e for e in els if e["type"] == "table")
    header_row = table["table_cells"][0]
    assert [c["text"] for c in header_row] == ["Payment", "Amount", "Due Date", "Alternative Due Date"]
    assert all(c["styles"] == ["bold"] for c in header_row)
    assert table["table_cells"][1][1] == {"text": "$100.00", "alignment": "right"}
    assert table["table_cells"][-1][0]["text"] == "Total Project Cost"

def test_initials_become_numbered_signer_fields():
    html = "<p>Clause one</p>{{initials}}<p>Clause two</p>{{initials}}"
    els = document_elements("T", html)
    fields = [e for e in els if e["type"] == "signer_field_text"]
    assert [f["signer_field_id"] for f in fields] == ["initial_1", "initial_2"]
    assert all(f["signer_field_assigned_to"] == "first_signer" for f in fields)
    assert els[1] == {"type": "text_normal", "text": "Clause one"}
