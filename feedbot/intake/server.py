"""
Feedbot Server

FastAPI gateway for Slack webhooks and the approval workflow.

Endpoints:
- POST /slack/events: Slack Events API (new messages in the feedback channel)
- POST /slack/interactions: button clicks and review modal submissions
- GET /health: Health check
- GET /stats: Approval store and work queue statistics

Every webhook is acknowledged immediately; the real work (LLM analysis,
Notion calls, Slack replies) is handed to a bounded work queue. A full queue
answers 503 so Slack redelivers later.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request, HTTPException, Header
from fastapi.responses import JSONResponse

from ..common.config import FeedbotConfig, load_config, ensure_directories
from ..common.llm_client import LLMClient
from ..common.notion_client import NotionClient
from ..common.slack_client import SlackClient
from .actions import ActionParseError, parse_block_action, parse_review_callback_id
from .approval_store import ApprovalStore, create_store
from .blocks import review_values
from .extractor import FeedbackExtractor
from .handlers import SlackHandler
from .orchestrator import FeedbackOrchestrator, OrchestratorSettings
from .scheduler import STATUS_INTERVAL_SECONDS, cancel_task, run_daily, run_every
from .work_queue import WorkQueue

logger = logging.getLogger("feedbot.intake.server")


@dataclass
class Components:
    """Everything the gateway needs, built once at startup."""
    config: FeedbotConfig
    store: ApprovalStore
    handler: SlackHandler
    orchestrator: FeedbackOrchestrator
    work_queue: WorkQueue
    notion: Optional[NotionClient] = None

    def close(self) -> None:
        if self.notion is not None:
            self.notion.close()


def build_components(config: FeedbotConfig) -> Components:
    """Connect to Slack, Notion and the LLM and open the approval store.

    Raises:
        RuntimeError: if any required collaborator cannot be initialized
    """
    if not config.slack.bot_token:
        raise RuntimeError("SLACK_BOT_TOKEN is not set")
    if not config.notion.api_key or not config.notion.database_id:
        raise RuntimeError("NOTION_API_KEY and NOTION_DATABASE_ID must be set")

    slack = SlackClient(config.slack.bot_token)
    slack.initialize()
    logger.info("Slack client initialized")

    notion = NotionClient(
        api_key=config.notion.api_key,
        database_id=config.notion.database_id,
        api_version=config.notion.api_version,
    )
    schema = notion.describe_schema()
    logger.info("Notion database connected (properties: %s)", ", ".join(schema))

    extractor = FeedbackExtractor(LLMClient.from_config(config.llm))
    if not extractor.is_available:
        notion.close()
        raise RuntimeError(f"No API key configured for LLM provider '{config.llm.provider}'")
    logger.info("Feedback extractor ready (%s: %s)", config.llm.provider, config.llm.model)

    store = create_store(config.store.backend, config.store.path)
    logger.info("Approval store ready (%s): %s", config.store.backend, store.stats())

    handler = SlackHandler(signing_secret=config.slack.signing_secret)
    orchestrator = FeedbackOrchestrator(
        store=store,
        slack=slack,
        extractor=extractor,
        task_sink=notion,
        handler=handler,
        settings=OrchestratorSettings.from_config(config),
    )
    work_queue = WorkQueue(maxsize=config.server.queue_size, workers=config.server.workers)
    return Components(
        config=config,
        store=store,
        handler=handler,
        orchestrator=orchestrator,
        work_queue=work_queue,
        notion=notion,
    )


def create_app(components: Optional[Components] = None) -> FastAPI:
    """Build the FastAPI app. Components are built at startup unless given."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting up...")
        comps = components
        if comps is None:
            ensure_directories()
            config = load_config()
            try:
                comps = build_components(config)
            except Exception as e:
                logger.critical("Initialization failed: %s", e)
                raise
        app.state.components = comps

        comps.work_queue.start()

        scheduler = comps.config.scheduler
        orchestrator = comps.orchestrator
        tasks = [
            asyncio.create_task(run_daily(scheduler.sweep_hour, orchestrator.sweep, "sweep")),
            asyncio.create_task(run_every(STATUS_INTERVAL_SECONDS, _log_status(comps), "status", run_immediately=False)),
        ]
        if scheduler.mode == "poll":
            tasks.append(asyncio.create_task(run_every(scheduler.interval_minutes * 60, orchestrator.run_poll_cycle, "poll")))
            logger.info("Polling #%s every %s minutes",
                        orchestrator.settings.feedback_channel_name, scheduler.interval_minutes)

        logger.info("Ready to receive events (mode: %s)", scheduler.mode)

        yield

        logger.info("Shutting down...")
        for task in tasks:
            await cancel_task(task)
        await comps.work_queue.stop()
        comps.close()

    app = FastAPI(
        title="Feedbot",
        description="Slack feedback triage into Notion tasks, with human approval",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.components = components

    # =========================================================================
    # Endpoints
    # =========================================================================

    @app.get("/health")
    async def health(request: Request):
        """Health check endpoint"""
        comps = request.app.state.components
        return {
            "status": "healthy",
            "service": "feedbot",
            "initialized": comps is not None,
            "mode": comps.config.scheduler.mode if comps else None,
            "queue_depth": comps.work_queue.depth if comps else 0,
        }

    @app.get("/stats")
    async def stats(request: Request):
        """Approval store and work queue statistics"""
        comps = _require(request)
        return {
            "service": "feedbot",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "approvals": comps.store.stats(),
            "queue": comps.work_queue.stats(),
        }

    @app.post("/slack/events")
    async def slack_events(
        request: Request,
        x_slack_signature: Optional[str] = Header(None),
        x_slack_request_timestamp: Optional[str] = Header(None),
    ):
        """Handle Slack Events API callbacks."""
        comps = _require(request)
        handler = comps.handler

        body = await request.body()
        if not handler.verify_signature(body, x_slack_signature or "", x_slack_request_timestamp or ""):
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise HTTPException(status_code=400, detail="Invalid JSON")
        if not isinstance(data, dict):
            raise HTTPException(status_code=400, detail="Invalid event payload")

        if handler.is_url_verification(data):
            return JSONResponse({"challenge": handler.get_challenge(data)})

        try:
            message = await handler.parse_event(data)
        except ValueError as e:
            logger.warning("Unreadable event payload: %s", e)
            raise HTTPException(status_code=400, detail="Invalid event payload")
        if message and not comps.orchestrator.is_processed(message.timestamp):
            accepted = comps.work_queue.submit(
                f"message:{message.timestamp}",
                comps.orchestrator.on_message_event,
                message,
            )
            if not accepted:
                raise HTTPException(status_code=503, detail="Work queue full")

        return JSONResponse({"ok": True})

    @app.post("/slack/interactions")
    async def slack_interactions(
        request: Request,
        x_slack_signature: Optional[str] = Header(None),
        x_slack_request_timestamp: Optional[str] = Header(None),
    ):
        """Handle button clicks and modal submissions."""
        comps = _require(request)
        handler = comps.handler

        body = await request.body()
        if not handler.verify_signature(body, x_slack_signature or "", x_slack_request_timestamp or ""):
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            payload = handler.parse_interaction(body, request.headers.get("content-type", ""))
        except ValueError as e:
            logger.warning("Unreadable interaction payload: %s", e)
            raise HTTPException(status_code=400, detail="Invalid interaction payload")

        kind = payload.get("type")
        if kind == "block_actions":
            parsed_actions = []
            for action in payload.get("actions") or []:
                try:
                    parsed_actions.append(parse_block_action(action))
                except ActionParseError as e:
                    logger.warning("Ignoring action: %s", e)
            # all or nothing: nothing is queued unless every action fits
            if parsed_actions and not comps.work_queue.has_room(len(parsed_actions)):
                logger.warning("Work queue full, rejecting %d actions", len(parsed_actions))
                raise HTTPException(status_code=503, detail="Work queue full")
            for parsed in parsed_actions:
                comps.work_queue.submit(
                    f"{parsed.kind.value}:{parsed.target}",
                    comps.orchestrator.handle_action,
                    parsed,
                    payload.get("trigger_id"),
                    payload.get("response_url"),
                )

        elif kind == "view_submission":
            view = payload.get("view") or {}
            key = parse_review_callback_id(view.get("callback_id", ""))
            if key:
                accepted = comps.work_queue.submit(
                    f"review:{key}",
                    comps.orchestrator.submit_review,
                    key,
                    review_values(view),
                )
                if not accepted:
                    raise HTTPException(status_code=503, detail="Work queue full")

        else:
            logger.debug("Ignoring interaction type %s", kind)

        # empty 200 acknowledges (and closes a submitted modal)
        return JSONResponse({})

    return app


def _require(request: Request) -> Components:
    comps = request.app.state.components
    if comps is None:
        raise HTTPException(status_code=503, detail="Not initialized")
    return comps


def _log_status(comps: Components):
    async def log_status():
        stats = comps.store.stats()
        logger.info(
            "Status: pending=%d approved=%d rejected=%d processed=%d queue_depth=%d",
            stats["pending"], stats["approved"], stats["rejected"],
            stats["processed"], comps.work_queue.depth,
        )
    return log_status


app = create_app()


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server(port: Optional[int] = None):
    """Run the Feedbot server"""
    import uvicorn

    config = load_config()
    port = port or config.server.port

    logger.info("Starting server on port %d", port)
    uvicorn.run(
        "feedbot.intake.server:app",
        host="0.0.0.0",
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
