"""
Mining Ops — Main Server
Runs the REST API for the UI/CLI layer plus a background loop that plays the
periodic trigger (finalize sweep, inactivity sweep, price refresh).

Usage:
    python server.py                  # REST API on port 8080 with sweep loop
    python server.py --sweep-once     # Run every sweep once and exit (for cron)
    python server.py --no-sweep-loop  # REST only; sweeps come from an external trigger
"""

import sys
import os
import json
import asyncio
import argparse
import logging
from typing import Optional, List

# ─── Add parent dir to path for imports ──────────────────────────────────
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fastapi import FastAPI, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

import config
from auth import AuthContext, init_auth, get_auth_context, get_validator, require_service_token
from database import OperationsDatabase
from gateway import LedgerGateway
from orchestrator import Orchestrator
from webhooks import WebhookManager, EVENT_TYPES, generate_webhook_secret

logger = logging.getLogger(__name__)

# Structured failure code -> HTTP status
ERROR_STATUS = {
    "validation": 400,
    "authorization": 403,
    "state_conflict": 409,
    "dependency": 503,
    "persistence": 503,
}


def raise_for_result(result: dict) -> dict:
    """Pass successful results through; turn structured failures into HTTPException."""
    if result.get("success"):
        return result
    status = 404 if result.get("reason") == "not_found" else ERROR_STATUS.get(result.get("code"), 400)
    raise HTTPException(status_code=status, detail=result)


# ═══════════════════════════════════════════════════════════════════════════
# PERIODIC TRIGGER
# ═══════════════════════════════════════════════════════════════════════════

def run_sweeps(orchestrator: Orchestrator, include_prices: bool = True) -> dict:
    """One tick of the periodic trigger. Each sweep isolates its own failures."""
    results = {
        "finalize": orchestrator.sweep_finalize_due(),
        "inactive": orchestrator.sweep_inactive(),
    }
    if include_prices:
        results["prices"] = orchestrator.sweep_refresh_prices()
    return results


async def sweep_loop(orchestrator: Orchestrator, interval: int, price_every: int = 60):
    """Background sweeps. Prices refresh every ``price_every`` ticks."""
    tick = 0
    while True:
        try:
            await asyncio.to_thread(run_sweeps, orchestrator, tick % price_every == 0)
        except asyncio.CancelledError:
            break
        except Exception:
            logger.exception("Sweep tick failed, retrying next interval")
        tick += 1
        await asyncio.sleep(interval)


# ═══════════════════════════════════════════════════════════════════════════
# WEB SERVER — REST API
# ═══════════════════════════════════════════════════════════════════════════

def create_web_server(orchestrator: Orchestrator, db: OperationsDatabase,
                      webhook_manager: Optional[WebhookManager] = None,
                      service_token: str = config.SERVICE_TOKEN) -> FastAPI:
    """Create FastAPI server with REST endpoints."""
    app = FastAPI(title="Mining Ops", version="1.0.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    init_auth(db, service_token)

    if webhook_manager is not None:
        orchestrator.register_listener(webhook_manager.handle_event)

    # ── Request Models ────────────────────────────────────────────────────
    class SessionRequest(BaseModel):
        name: str
        character_id: int
        access_token: Optional[str] = None

    class CreateOperationRequest(BaseModel):
        title: str
        description: str = ""

    class JoinRequest(BaseModel):
        join_code: str

    class ActionRequest(BaseModel):
        action: str
        target_user_id: Optional[str] = None
        immediate: bool = False

    class SnapshotRequest(BaseModel):
        kind: str = "update"

    class WebhookRequest(BaseModel):
        url: str
        event_types: List[str]

    # ── Auth ──────────────────────────────────────────────────────────────

    @app.post("/auth/session")
    def create_session(req: SessionRequest, _: str = Depends(require_service_token)):
        """
        Called by the identity layer after its own login handshake: register (or
        refresh) the pilot with the ledger token it obtained and open a session.
        """
        result = raise_for_result(orchestrator.register_user(req.name, req.character_id, req.access_token))
        session, token = get_validator().issue(result["user"]["id"])
        return {"success": True, "token": token, "expires_at": session.expires_at, "user": result["user"]}

    @app.post("/auth/logout")
    def logout(auth: AuthContext = Depends(get_auth_context)):
        return {"success": get_validator().logout(auth.session_id)}

    @app.get("/api/me")
    def me(auth: AuthContext = Depends(get_auth_context)):
        user = db.get_user(auth.user_id)
        return {"success": True, "user": user.to_dict()}

    # ── Operations ────────────────────────────────────────────────────────

    @app.post("/api/operations")
    def create_operation(req: CreateOperationRequest, auth: AuthContext = Depends(get_auth_context)):
        return raise_for_result(orchestrator.create_operation(auth.user_id, req.title, req.description))

    @app.post("/api/operations/join")
    def join_operation(req: JoinRequest, auth: AuthContext = Depends(get_auth_context)):
        return raise_for_result(orchestrator.join_operation(auth.user_id, req.join_code))

    @app.post("/api/operations/{operation_id}/actions")
    def participant_action(operation_id: str, req: ActionRequest, auth: AuthContext = Depends(get_auth_context)):
        return raise_for_result(orchestrator.participant_action(
            auth.user_id, operation_id, req.action, req.target_user_id, immediate=req.immediate
        ))

    @app.get("/api/operations/{operation_id}/status")
    def operation_status(operation_id: str, auth: AuthContext = Depends(get_auth_context)):
        return raise_for_result(orchestrator.get_operation_status(operation_id))

    @app.get("/api/operations/{operation_id}/mining")
    def mining_data(operation_id: str, auth: AuthContext = Depends(get_auth_context)):
        return raise_for_result(orchestrator.get_mining_data(operation_id, auth.user_id))

    @app.post("/api/operations/{operation_id}/snapshots")
    def capture_snapshot(operation_id: str, req: SnapshotRequest, auth: AuthContext = Depends(get_auth_context)):
        return raise_for_result(orchestrator.capture_snapshot(operation_id, auth.user_id, req.kind))

    # ── Periodic trigger (service token) ──────────────────────────────────

    @app.post("/api/sweep/finalize")
    def sweep_finalize(_: str = Depends(require_service_token)):
        return orchestrator.sweep_finalize_due()

    @app.post("/api/sweep/inactive")
    def sweep_inactive(_: str = Depends(require_service_token)):
        return orchestrator.sweep_inactive()

    @app.post("/api/sweep/prices")
    def sweep_prices(_: str = Depends(require_service_token)):
        return orchestrator.sweep_refresh_prices()

    @app.post("/api/operations/{operation_id}/capture")
    def capture_all(operation_id: str, _: str = Depends(require_service_token)):
        return raise_for_result(orchestrator.capture_all(operation_id))

    # ── Webhooks (service token) ──────────────────────────────────────────

    @app.post("/api/webhooks")
    def create_webhook(req: WebhookRequest, _: str = Depends(require_service_token)):
        unknown = [e for e in req.event_types if e != "*" and e not in EVENT_TYPES]
        if unknown:
            raise HTTPException(status_code=400, detail=f"Unknown event types: {', '.join(unknown)}")
        secret = generate_webhook_secret()
        webhook = db.create_webhook(req.url, secret, req.event_types)
        return {"success": True, "webhook": webhook.to_dict(), "secret": secret}

    @app.get("/api/webhooks")
    def list_webhooks(_: str = Depends(require_service_token)):
        return {"success": True, "webhooks": [w.to_dict() for w in db.get_webhooks(active_only=False)]}

    @app.delete("/api/webhooks/{webhook_id}")
    def delete_webhook(webhook_id: str, _: str = Depends(require_service_token)):
        if not db.delete_webhook(webhook_id):
            raise HTTPException(status_code=404, detail="Webhook not found")
        return {"success": True}

    @app.post("/api/webhooks/drain")
    async def drain_webhooks(_: str = Depends(require_service_token)):
        """Attempt due deliveries now instead of waiting for the delivery loop."""
        if webhook_manager is None:
            raise HTTPException(status_code=503, detail="Webhooks disabled")
        return {"success": True, "attempted": await webhook_manager.drain_once()}

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


# ═══════════════════════════════════════════════════════════════════════════
# MAIN — Entry point
# ═══════════════════════════════════════════════════════════════════════════

def main():
    parser = argparse.ArgumentParser(description="Mining Ops Server")
    parser.add_argument("--port", type=int, default=8080, help="Port for the REST server")
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--db", type=str, default=config.DB_PATH, help="Database file path")
    parser.add_argument("--sweep-once", action="store_true", help="Run all sweeps once and exit")
    parser.add_argument("--no-sweep-loop", action="store_true", help="Do not run sweeps in-process")
    args = parser.parse_args()

    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db = OperationsDatabase(args.db)
    gateway = LedgerGateway()
    webhook_manager = WebhookManager(db)
    orch = Orchestrator(db, gateway)

    if args.sweep_once:
        orch.register_listener(webhook_manager.handle_event)
        results = run_sweeps(orch)
        results["webhooks_attempted"] = asyncio.run(webhook_manager.drain_once())
        print(json.dumps(results, indent=2))
        gateway.close()
        return

    import uvicorn
    app = create_web_server(orch, db, webhook_manager)
    print(f"Starting Mining Ops server on http://{args.host}:{args.port}")
    print(f"  REST API:  http://localhost:{args.port}/api/")
    print(f"  Sweeps:    {'external trigger' if args.no_sweep_loop else f'every {config.SWEEP_INTERVAL_SECONDS}s'}")

    async def run_with_background():
        webhook_manager.start()
        sweeper = None
        if not args.no_sweep_loop and config.SWEEP_INTERVAL_SECONDS > 0:
            sweeper = asyncio.create_task(sweep_loop(orch, config.SWEEP_INTERVAL_SECONDS))
        server = uvicorn.Server(uvicorn.Config(app, host=args.host, port=args.port))
        try:
            await server.serve()
        finally:
            if sweeper:
                sweeper.cancel()
            webhook_manager.stop()
            gateway.close()

    asyncio.run(run_with_background())


if __name__ == "__main__":
    main()
