from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, List, Optional
import json
import sys
import typer
from rich import print

from contractops.compiler import RenderablePart, render_contract
from contractops.elements import document_elements
from contractops.logging import configure_logging

app = typer.Typer(add_completion=False)

def load_bundle(path: Path) -> Dict[str, Any]:
    try:
        bundle = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise typer.BadParameter(f"Cannot read bundle {path}: {e}")
    if not isinstance(bundle, dict) or not isinstance(bundle.get("contract"), dict):
        raise typer.BadParameter("Bundle must be an object with a 'contract' object")
    return bundle

def parts_from_bundle(bundle: Dict[str, Any]) -> List[RenderablePart]:
    parts = []
    for i, raw in enumerate(bundle.get("parts") or []):
        custom = raw.get("custom_content")
        parts.append(RenderablePart(
            title=raw.get("title") or "",
            content=custom if custom is not None else (raw.get("content") or ""),
            order_index=raw.get("order_index", i),
            is_included=raw.get("is_included", True),
        ))
    return parts

def compile_bundle(bundle: Dict[str, Any]) -> str:
    return render_contract(bundle["contract"], parts_from_bundle(bundle), bundle.get("related"))

@app.command("compile")
def compile_cmd(bundle_path: str, out: Optional[str] = typer.Option(None, help="Write HTML here instead of stdout")):
    configure_logging("WARNING", stream=sys.stderr)
    html = compile_bundle(load_bundle(Path(bundle_path)))
    if out:
        Path(out).write_text(html, encoding="utf-8")
        print(f"[green]Wrote[/green] {out} ({len(html)} chars)")
    else:
        typer.echo(html)

@app.command()
def elements(bundle_path: str):
    configure_logging("WARNING", stream=sys.stderr)
    bundle = load_bundle(Path(bundle_path))
    html = compile_bundle(bundle)
    els = document_elements(bundle["contract"].get("title") or "Contract", html)
    typer.echo(json.dumps(els, indent=2, ensure_ascii=False))

if __name__ == "__main__":
    app()
