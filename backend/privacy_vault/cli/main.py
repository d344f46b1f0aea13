"""CLI entrypoint for Privacy Vault."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional

import requests
import typer

app = typer.Typer(name="pvault", help="Privacy Vault command-line interface")
consent_app = typer.Typer(name="consent", help="Grant, withdraw and inspect consent")
retention_app = typer.Typer(name="retention", help="Retention policies and previews")
app.add_typer(consent_app, name="consent")
app.add_typer(retention_app, name="retention")

DEFAULT_HOST = "http://127.0.0.1:5173"


def _resolve_host(override: Optional[str]) -> str:
    if override:
        return override.rstrip('/')
    env_host = os.environ.get("PVAULT_HOST")
    if env_host:
        return env_host.rstrip('/')
    return DEFAULT_HOST


def _request(method: str, path: str, host: Optional[str] = None, **kwargs) -> requests.Response:
    base = _resolve_host(host)
    url = f"{base}{path}"
    resp = requests.request(method, url, timeout=60, **kwargs)
    if not resp.ok:
        try:
            detail = resp.json()
        except ValueError:
            detail = resp.text
        typer.echo(f"Request failed ({resp.status_code}): {detail}", err=True)
        raise typer.Exit(code=1)
    return resp


def _echo(resp: requests.Response) -> None:
    typer.echo(json.dumps(resp.json(), indent=2))


@app.command()
def ingest(
    subject: str = typer.Argument(..., help="Data subject identifier"),
    path: Optional[Path] = typer.Option(None, "--path", help="Read extracted text from this file"),
    text: Optional[str] = typer.Option(None, "--text", help="Inline text to ingest"),
    purpose: Optional[str] = typer.Option(None, "--purpose", help="Consent purpose; defaults to the one the kind requires"),
    kind: str = typer.Option("document", "--kind", help="document or chat_message"),
    session: Optional[str] = typer.Option(None, "--session", help="Chat session identifier"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Ingest a document or chat message for a subject."""
    if path is None and text is None:
        typer.echo("Provide --path or --text", err=True)
        raise typer.Exit(code=2)
    body: dict[str, object] = {
        "subject_id": subject,
        "purpose": purpose or ("chat_storage" if kind == "chat_message" else "document_processing"),
        "resource_hint": kind,
        "text": text if text is not None else path.expanduser().read_text(encoding="utf-8"),
    }
    if path is not None:
        body["filename"] = path.name
    if session:
        body["session_id"] = session
    _echo(_request("POST", "/ingest", host=host, json=body))


@app.command()
def search(
    q: str = typer.Argument(..., help="Query text"),
    k: int = typer.Option(5, "--k", help="Number of results to return"),
    subject: Optional[str] = typer.Option(None, "--subject", help="Caller subject, enables remote embeddings"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Similarity search over stored document chunks."""
    payload: dict[str, object] = {"query": q, "k": k}
    if subject:
        payload["subject_id"] = subject
    _echo(_request("POST", "/search", host=host, json=payload))


@app.command()
def delete(
    document_id: str = typer.Argument(..., help="Document identifier"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Delete a document and everything derived from it."""
    _echo(_request("DELETE", f"/documents/{document_id}", host=host))


@consent_app.command("grant")
def grant(
    subject: str = typer.Argument(..., help="Data subject identifier"),
    purpose: str = typer.Argument(..., help="Consent purpose"),
    policy_version: str = typer.Option("1", "--policy-version", help="Privacy policy version agreed to"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Grant consent for one purpose."""
    payload = {"subject_id": subject, "purpose": purpose, "policy_version": policy_version}
    _echo(_request("POST", "/consents/grant", host=host, json=payload))


@consent_app.command("withdraw")
def withdraw(
    subject: str = typer.Argument(..., help="Data subject identifier"),
    purpose: str = typer.Argument(..., help="Consent purpose"),
    reason: Optional[str] = typer.Option(None, "--reason", help="Why consent is withdrawn"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Withdraw consent for one purpose."""
    payload = {"subject_id": subject, "purpose": purpose, "reason": reason}
    _echo(_request("POST", "/consents/withdraw", host=host, json=payload))


@consent_app.command("list")
def list_consents(
    subject: str = typer.Argument(..., help="Data subject identifier"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Show active consents and the full timeline."""
    _echo(_request("GET", f"/consents/{subject}", host=host))


@app.command()
def audit(
    subject: Optional[str] = typer.Option(None, "--subject", help="Only entries about this subject"),
    action: Optional[str] = typer.Option(None, "--action", help="Filter by action"),
    outcome: Optional[str] = typer.Option(None, "--outcome", help="success or failure"),
    limit: int = typer.Option(100, "--limit", help="Maximum entries"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Query the audit trail, newest first."""
    params: dict[str, object] = {"limit": limit}
    if subject:
        params["subject_id"] = subject
    if action:
        params["action"] = action
    if outcome:
        params["outcome"] = outcome
    _echo(_request("GET", "/audit", host=host, params=params))


@app.command()
def processing(
    subject: Optional[str] = typer.Option(None, "--subject", help="Only records about this subject"),
    purpose: Optional[str] = typer.Option(None, "--purpose", help="Filter by consent purpose"),
    limit: int = typer.Option(100, "--limit", help="Maximum records"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """List the record of processing activities."""
    params: dict[str, object] = {"limit": limit}
    if subject:
        params["subject_id"] = subject
    if purpose:
        params["purpose"] = purpose
    _echo(_request("GET", "/processing", host=host, params=params))

@app.command()
def export(
    subject: str = typer.Argument(..., help="Data subject identifier"),
    output: Optional[Path] = typer.Option(None, "--output", help="Write the export to this file"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Export everything held about a subject."""
    resp = _request("GET", f"/subjects/{subject}/export", host=host)
    if output is None:
        _echo(resp)
        return
    output.expanduser().write_text(json.dumps(resp.json(), indent=2), encoding="utf-8")
    typer.echo(json.dumps({"status": "ok", "path": str(output)}))


@app.command()
def erase(
    subject: str = typer.Argument(..., help="Data subject identifier"),
    yes: bool = typer.Option(False, "--yes", help="Skip confirmation"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Erase all documents and messages held about a subject."""
    if not yes:
        typer.confirm(f"Erase all data for '{subject}'?", abort=True)
    _echo(_request("POST", f"/subjects/{subject}/erase", host=host))


@app.command()
def sweep(
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Run a retention sweep now."""
    _echo(_request("POST", "/retention/sweep", host=host))


@retention_app.command("preview")
def preview(
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Count what the next sweep would delete."""
    _echo(_request("GET", "/retention/preview", host=host))


@retention_app.command("policies")
def policies(
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """List retention policies."""
    _echo(_request("GET", "/retention/policies", host=host))


@retention_app.command("set")
def set_policy(
    kind: str = typer.Argument(..., help="documents or chat_messages"),
    ttl: int = typer.Argument(..., help="Time to live in seconds"),
    auto_delete: bool = typer.Option(True, "--auto-delete/--no-auto-delete", help="Delete on sweep"),
    restamp: bool = typer.Option(False, "--restamp", help="Recompute expiry of existing rows"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Set the policy for one resource kind."""
    payload = {"ttl_seconds": ttl, "auto_delete": auto_delete, "restamp": restamp}
    _echo(_request("PUT", f"/retention/policies/{kind}", host=host, json=payload))


if __name__ == "__main__":
    app()
