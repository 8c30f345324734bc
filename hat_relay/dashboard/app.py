"""
Hat Relay — submission surface for the assign-hat workflow.

FastAPI application providing:
- Authorization status of the connected wallet (Safe ownership)
- Assign-hat form (recipient address + leader name)
- JSON API that runs one workflow submission and returns the Safe proposal

The connected wallet is the configured signer. Rendering here is a thin
shell; every decision is made by the workflow orchestrator.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

from hat_relay.chain.schema import AuthorizationStatus
from hat_relay.config import settings

logger = logging.getLogger(__name__)


# ── Pydantic request models ────────────────────────────────────


class AssignHatRequest(BaseModel):
    recipient: str
    label: str


class DashboardState:
    """Mutable application state injected at startup."""

    def __init__(self) -> None:
        self.workflow: Any = None
        self.identity: str | None = None
        self.startup_time: datetime = datetime.now(timezone.utc)


state = DashboardState()

ERROR_STATUS_CODES = {
    "not_connected": 401,
    "unauthorized": 403,
    "encoding_failed": 422,
    "submission_in_progress": 409,
    "identifier_prediction_failed": 502,
    "proposal_submission_failed": 502,
}


# ── Application lifecycle ──────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup & shutdown lifecycle — wire the workflow to live services."""
    from hat_relay.orchestrator import build_workflow, configure_logging

    configure_logging(settings)
    if state.workflow is None:
        state.workflow, state.identity = build_workflow(settings)
    logger.info(
        "Hat Relay dashboard starting — connected wallet: %s",
        state.identity or "none",
    )

    yield

    relay = getattr(state.workflow, "relay", None)
    if relay is not None and hasattr(relay, "close"):
        await relay.close()
    logger.info("Hat Relay dashboard shut down")


app = FastAPI(title="Hat Relay", lifespan=lifespan)


def _html_page(title: str, body: str) -> HTMLResponse:
    """Wrap body HTML in a complete page."""
    return HTMLResponse(f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>{title} — Hat Relay</title>
    <style>
        :root {{
            --bg: #0d1117; --surface: #161b22; --border: #30363d;
            --text: #c9d1d9; --text-muted: #8b949e; --accent: #58a6ff;
            --green: #3fb950; --red: #f85149;
        }}
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Helvetica, Arial, sans-serif;
            background: var(--bg); color: var(--text); line-height: 1.6; margin: 0;
        }}
        .container {{ max-width: 720px; margin: 0 auto; padding: 1rem; }}
        .card {{
            background: var(--surface); border: 1px solid var(--border);
            border-radius: 8px; padding: 1.25rem; margin: 1rem 0;
        }}
        .card h2 {{ font-size: 1rem; margin-bottom: 0.75rem; color: var(--accent); }}
        .ok {{ color: var(--green); }}
        .err {{ color: var(--red); }}
        label {{ display: block; margin-top: 0.75rem; color: var(--text-muted); }}
        input {{ width: 100%; padding: 0.4rem; background: var(--bg); color: var(--text);
                 border: 1px solid var(--border); border-radius: 6px; }}
        button {{ margin-top: 1rem; padding: 0.4rem 1rem; border-radius: 6px;
                  background: var(--accent); border: none; cursor: pointer; }}
        pre {{ background: var(--bg); padding: 0.75rem; border-radius: 6px; overflow-x: auto; }}
    </style>
</head>
<body>
    <div class="container">{body}</div>
</body>
</html>""")


_FORM_SCRIPT = """
<script>
document.getElementById('assign').addEventListener('submit', async (e) => {
  e.preventDefault();
  const button = e.target.querySelector('button');
  const out = document.getElementById('result');
  button.disabled = true;
  button.textContent = 'Assigning...';
  try {
    const resp = await fetch('/api/hats/assign', {
      method: 'POST',
      headers: {'Content-Type': 'application/json'},
      body: JSON.stringify({
        recipient: document.getElementById('recipient').value,
        label: document.getElementById('label').value,
      }),
    });
    out.textContent = JSON.stringify(await resp.json(), null, 2);
  } finally {
    button.disabled = false;
    button.textContent = 'Assign Hat';
  }
});
</script>
"""


def _authorization_message(status: AuthorizationStatus) -> str:
    if status == AuthorizationStatus.AUTHORIZED:
        return "<span class='ok'>You can create and assign new hats as a Safe owner</span>"
    if status == AuthorizationStatus.PENDING:
        return "Checking permissions..."
    if status == AuthorizationStatus.UNKNOWN:
        return "<span class='err'>Could not verify Safe ownership</span>"
    return "<span class='err'>You don't have permission to create new hats</span>"


# ── Routes ─────────────────────────────────────────────────────


@app.get("/", response_class=HTMLResponse)
async def assign_hat_page():
    if state.identity is None:
        return _html_page(
            "Assign Hat",
            "<h1>Assign Hat</h1><p>Please connect your wallet to assign a hat.</p>",
        )

    result = await state.workflow.authorization.check(state.identity)
    body = f"""
    <h1>Assign Hat to Community Leader</h1>
    <div class="card">
        <h2>Authorization Status</h2>
        <p>{_authorization_message(result.status)}</p>
    </div>
    <div class="card">
        <form id="assign">
            <label for="recipient">Wallet Address</label>
            <input id="recipient" type="text" placeholder="0x..." required>
            <label for="label">Leader Name</label>
            <input id="label" type="text" placeholder="John Doe" required>
            <button type="submit">Assign Hat</button>
        </form>
        <pre id="result"></pre>
    </div>
    {_FORM_SCRIPT}
    """
    return _html_page("Assign Hat", body)


@app.get("/api/authorization")
async def api_authorization():
    """Authorization status of the connected wallet."""
    if state.identity is None:
        return {"identity": None, "status": "not_connected", "detail": ""}
    result = await state.workflow.authorization.check(state.identity)
    return {
        "identity": result.identity,
        "status": result.status.value,
        "detail": result.detail,
        "checked_at": result.checked_at.isoformat(),
    }


@app.post("/api/hats/assign")
async def api_assign_hat(req: AssignHatRequest):
    """Create a hat under the parent hat and mint it to the recipient via the Safe."""
    if state.workflow is None:
        raise HTTPException(status_code=503, detail="Workflow not initialized")

    run = await state.workflow.submit(state.identity, req.recipient, req.label)
    summary = run.summary()
    if not run.succeeded:
        raise HTTPException(
            status_code=ERROR_STATUS_CODES.get(run.error.kind, 500),
            detail=summary,
        )

    summary["transactions"] = [call.as_transaction() for call in run.proposal]
    summary["message"] = (
        f"Successfully proposed hat creation and minting for {run.label} ({run.recipient})"
    )
    return summary


@app.get("/health")
async def health():
    """Health check endpoint."""
    return JSONResponse({
        "status": "healthy",
        "uptime_seconds": (datetime.now(timezone.utc) - state.startup_time).total_seconds(),
        "wallet_connected": state.identity is not None,
        "workflow_available": state.workflow is not None,
    })


def run() -> None:
    """Serve the dashboard on the configured host and port."""
    import uvicorn

    uvicorn.run(app, host=settings.dashboard_host, port=settings.dashboard_port)


if __name__ == "__main__":
    run()
