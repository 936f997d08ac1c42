"""
Standup Orchestrator - FastAPI Application

HTTP shell around the workflow engine:
- POST /slack/events         signed event callbacks (acknowledged immediately)
- POST /slack/interactions   signed interactive payloads (payload=<json> form)
- POST /flows/{flow_name}    scheduler trigger for the daily flows
- GET  /health

Handler work is deferred through BackgroundTasks so the acknowledgement never
waits on the task source, the model or the chat API.

The task source and the model-backed collaborators are deployment specific;
they are supplied to build_services() and the result to create_app().
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import parse_qs

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request

from . import __version__
from .checkin import CheckinMachine
from .collaborators import MentionInterpreter, MessagingGateway, ProposalAnalyzer, ReplyClassifier, TaskSource
from .config import AppConfig, load_config
from .dedup import NotificationDeduplicator
from .errors import ConfigurationError, InvalidSignatureError, PayloadValidationError, StaleRequestError
from .flows import FlowRunner
from .kv_store import KVStore, create_kv_store
from .mention import MentionHandler
from .pending_actions import ActionExecutor, PendingActionService
from .quality_gate import ReplyQualityGate
from .reminders import ReminderService
from .report_thread import ReportThreadMachine
from .router import EventRouter, parse_envelope, parse_interaction
from .selection import DisambiguationService
from .signature import RETRY_NUM_HEADER, SIGNATURE_HEADER, TIMESTAMP_HEADER, SignatureVerifier
from .slack_gateway import SlackGateway
from .snapshots import SnapshotStore
from .state_store import WorkflowStateStore
from .submitter import BackgroundSubmitter

# -----------------------------------------------------------------------------
# Logging Configuration
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("standup.main")


# -----------------------------------------------------------------------------
# Service Wiring
# -----------------------------------------------------------------------------
@dataclass
class Services:
    router: EventRouter
    flows: FlowRunner
    store: WorkflowStateStore


def build_services(
    config: AppConfig,
    source: TaskSource,
    classifier: ReplyClassifier,
    analyzer: ProposalAnalyzer,
    interpreter: MentionInterpreter,
    gateway: Optional[MessagingGateway] = None,
    kv: Optional[KVStore] = None,
) -> Services:
    """Wire every component against one store and one gateway."""
    kv = kv or create_kv_store(config.kv_backend, config.kv_path)
    gateway = gateway or SlackGateway(
        config.bot_token,
        max_attempts=config.retry_attempts,
        initial_delay=config.retry_initial_delay,
    )

    store = WorkflowStateStore(kv)
    snapshots = SnapshotStore(kv, config.snapshot_ttl_seconds)
    executor = ActionExecutor(source, dry_run=config.dry_run)
    pending = PendingActionService(store, gateway, executor, notify_channel=config.notify_channel_id)
    selection = DisambiguationService(store, gateway, pending)
    checkin = CheckinMachine(store, gateway, ReplyQualityGate(classifier))
    report = ReportThreadMachine(store, gateway, analyzer, pending, executor)
    reminders = ReminderService(store, gateway)
    mention = MentionHandler(store, gateway, source, interpreter, pending, selection, snapshots)

    router = EventRouter(
        checkin,
        report,
        pending,
        mention,
        selection,
        reminders,
        config.utc_offset_hours,
        bot_user_id=config.bot_user_id,
    )
    flows = FlowRunner(
        config,
        store,
        gateway,
        source,
        analyzer,
        checkin,
        report,
        reminders,
        snapshots,
        NotificationDeduplicator(kv, config.dedup_ttl_seconds),
    )
    return Services(router=router, flows=flows, store=store)


# -----------------------------------------------------------------------------
# Request Helpers
# -----------------------------------------------------------------------------
def _verify(verifier: Optional[SignatureVerifier], request: Request, body: bytes) -> None:
    if verifier is None:
        raise HTTPException(status_code=500, detail="Signing secret not configured")
    try:
        verifier.verify(body, request.headers.get(TIMESTAMP_HEADER), request.headers.get(SIGNATURE_HEADER))
    except StaleRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InvalidSignatureError as e:
        raise HTTPException(status_code=401, detail=str(e))


def _decode_json(raw: Any, what: str) -> Dict[str, Any]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"Malformed {what}")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail=f"Malformed {what}")
    return data


# -----------------------------------------------------------------------------
# FastAPI Application
# -----------------------------------------------------------------------------
def create_app(config: Optional[AppConfig] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the HTTP application.

    Args:
        config: Settings (defaults to load_config())
        services: Wired components; webhook and flow endpoints answer 503
                  until these are supplied

    Returns:
        FastAPI app
    """
    config = config or load_config()
    try:
        verifier: Optional[SignatureVerifier] = SignatureVerifier(
            config.require_signing_secret(), config.replay_window_seconds
        )
    except ConfigurationError as e:
        logger.error(f"STARTUP: {e}")
        verifier = None

    app = FastAPI(
        title="Standup Orchestrator",
        description="Daily check-in, report and approval workflow over chat",
        version=__version__
    )
    app.state.config = config
    app.state.services = services

    def require_services() -> Services:
        if app.state.services is None:
            raise HTTPException(status_code=503, detail="Services not configured")
        return app.state.services

    # -------------------------------------------------------------------------
    # API Endpoints - Health
    # -------------------------------------------------------------------------
    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
            "components": {
                "signing_secret": verifier is not None,
                "services": app.state.services is not None,
                "kv_backend": config.kv_backend,
                "dry_run": config.dry_run,
            },
        }

    # -------------------------------------------------------------------------
    # API Endpoints - Chat Webhooks
    # -------------------------------------------------------------------------
    @app.post("/slack/events")
    async def slack_events(request: Request, background_tasks: BackgroundTasks):
        body = await request.body()
        raw = _decode_json(body, "event payload")

        if raw.get("type") == "url_verification":
            return {"challenge": raw.get("challenge", "")}

        _verify(verifier, request, body)
        services = require_services()
        try:
            envelope = parse_envelope(raw)
        except PayloadValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))

        kind = await services.router.route_event(
            envelope,
            BackgroundSubmitter(background_tasks),
            retry_num=request.headers.get(RETRY_NUM_HEADER),
        )
        return {"ok": True, "kind": kind.value}

    @app.post("/slack/interactions")
    async def slack_interactions(request: Request, background_tasks: BackgroundTasks):
        body = await request.body()
        _verify(verifier, request, body)
        services = require_services()

        try:
            form = parse_qs(body.decode("utf-8"))
        except UnicodeDecodeError:
            raise HTTPException(status_code=400, detail="Malformed interaction payload")
        if "payload" not in form:
            raise HTTPException(status_code=400, detail="Missing payload field")
        raw = _decode_json(form["payload"][0], "interaction payload")
        try:
            payload = parse_interaction(raw)
        except PayloadValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))

        kind = await services.router.route_interaction(payload, BackgroundSubmitter(background_tasks))
        return {"ok": True, "kind": kind.value}

    # -------------------------------------------------------------------------
    # API Endpoints - Scheduled Flows
    # -------------------------------------------------------------------------
    @app.post("/flows/{flow_name}")
    async def run_flow(flow_name: str):
        services = require_services()
        if flow_name not in services.flows.flow_names:
            raise HTTPException(status_code=404, detail=f"Flow '{flow_name}' not found")
        try:
            result = await services.flows.run(flow_name)
        except ConfigurationError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"flow": flow_name, "result": result}

    return app


# -----------------------------------------------------------------------------
# Entry Point
# -----------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
