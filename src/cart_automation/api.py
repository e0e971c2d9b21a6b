"""FastAPI application for the cart automation service.

Exposes REST endpoints for:
- Creating runs from a shopping list (processing starts in the background)
- Inspecting runs
- Starting checkout for a run whose cart is ready, over REST or a Slack
  slash command
- SSE streaming of run progress
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import parse_qs

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from common import ErrorResponse, HealthResponse

from cart_automation.agents.base import AutomationFactory
from cart_automation.agents.simulated import create_automation_factory
from cart_automation.config import Settings
from cart_automation.models import RunRecord, RunStatus
from cart_automation.orchestrator.checkout import (
    CheckoutNotReadyError,
    CheckoutProcess,
    ensure_checkout_ready,
)
from cart_automation.orchestrator.processing import ItemProcessor
from cart_automation.protocols.notifier import FanoutNotifier, Notifier
from cart_automation.protocols.slack_client import SlackNotifier
from cart_automation.protocols.slack_commands import (
    CHECKOUT_USAGE,
    checkout_failed_reply,
    checkout_started_reply,
    ephemeral,
    verify_slack_request,
)
from cart_automation.runs.lifecycle import RunLifecycle, RunValidationError
from cart_automation.runs.store import JsonFileRunStore, RunStore
from cart_automation.streaming import RunEventStream

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class CreateRunRequest(BaseModel):
    """Incoming shopping list.  Entries are validated by the lifecycle."""

    items: list[dict[str, Any]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Application state container
# ---------------------------------------------------------------------------


class AppState:
    """Shared application state accessible from route handlers."""

    def __init__(
        self,
        settings: Settings,
        store: RunStore | None = None,
        automation_factory: AutomationFactory | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.settings = settings
        self.lifecycle = RunLifecycle(store or JsonFileRunStore(settings.state_file))
        self.event_stream = RunEventStream()
        self.notifier = FanoutNotifier(
            [notifier or SlackNotifier(settings), self.event_stream]
        )
        self.automation_factory = automation_factory or create_automation_factory(settings)
        self.tasks: dict[str, asyncio.Task[Any]] = {}

    def processor(self) -> ItemProcessor:
        return ItemProcessor(
            self.lifecycle,
            self.notifier,
            self.automation_factory,
            credentials=self.settings.retailer_credentials(),
        )

    def checkout(self) -> CheckoutProcess:
        return CheckoutProcess(
            self.lifecycle,
            self.notifier,
            self.automation_factory,
            self.settings,
        )

    def spawn(self, run_id: str, coro: Any) -> asyncio.Task[Any]:
        """Start background work for a run and keep a handle on it."""
        task = asyncio.create_task(coro, name=f"run-{run_id}")
        self.tasks[run_id] = task
        task.add_done_callback(lambda done: self._task_finished(run_id, done))
        return task

    def _task_finished(self, run_id: str, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            logger.warning("run_task_cancelled", run_id=run_id)
        elif task.exception() is not None:
            logger.error("run_task_crashed", run_id=run_id, error=str(task.exception()))


def _run_payload(run: RunRecord) -> dict[str, Any]:
    return run.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Settings | None = None,
    store: RunStore | None = None,
    automation_factory: AutomationFactory | None = None,
    notifier: Notifier | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or Settings()
    state = AppState(settings, store, automation_factory, notifier)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await state.notifier.close()

    app = FastAPI(
        lifespan=lifespan,
        title="Cart Automation",
        description=(
            "Fills a retailer cart from a shopping list with browser automation, "
            "tracks each run durably, and completes checkout on request."
        ),
        version=settings.service_version,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.app_state = state
    app.state.settings = settings

    async def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
        if settings.api_key and x_api_key != settings.api_key:
            logger.warning("api_key_rejected")
            raise HTTPException(status_code=401, detail="Invalid API key provided")

    def launch_checkout(run_id: str) -> None:
        """Check the run can be checked out and start checkout in the background.

        Raises ``HTTPException`` (404, 409 or 500) when checkout is refused;
        the run's status is unchanged in that case.
        """
        run = state.lifecycle.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail=f"Run {run_id} not found")

        active = state.tasks.get(run_id)
        if active is not None and not active.done():
            raise HTTPException(
                status_code=409,
                detail=f"Run {run_id} already has a pass in progress.",
            )
        try:
            ensure_checkout_ready(run)
        except CheckoutNotReadyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

        previous = run.status
        state.lifecycle.update_status(run_id, RunStatus.CHECKOUT_STARTED)
        checkout = state.checkout().run(run_id)
        try:
            state.spawn(run_id, checkout)
        except Exception as exc:
            checkout.close()
            logger.error("checkout_launch_failed", run_id=run_id, error=str(exc))
            state.lifecycle.update_status(run_id, RunStatus.CART_READY)
            raise HTTPException(status_code=500, detail="Failed to start checkout") from exc

        logger.info("checkout_launched", run_id=run_id, previous=previous.value)

    # -------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health() -> HealthResponse:
        return HealthResponse(
            status="healthy",
            service=settings.service_name,
            version=settings.service_version,
        )

    # -------------------------------------------------------------------
    # Run endpoints
    # -------------------------------------------------------------------

    @app.post(
        "/api/v1/runs",
        status_code=202,
        tags=["runs"],
        dependencies=[Depends(require_api_key)],
    )
    async def create_run(req: CreateRunRequest) -> dict[str, Any]:
        """Create a run and start filling the cart in the background."""
        try:
            run_id = state.lifecycle.create_run(req.items)
        except RunValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

        state.spawn(run_id, state.processor().run(run_id))

        return {
            "run_id": run_id,
            "status": RunStatus.PENDING.value,
            "message": f"Shopping run created with {len(req.items)} item(s).",
            "stream_url": f"/api/v1/runs/{run_id}/stream",
        }

    @app.get("/api/v1/runs", tags=["runs"], dependencies=[Depends(require_api_key)])
    async def list_runs() -> dict[str, Any]:
        runs = state.lifecycle.list_runs()
        return {"runs": [_run_payload(run) for run in runs], "total": len(runs)}

    @app.get("/api/v1/runs/{run_id}", tags=["runs"], dependencies=[Depends(require_api_key)])
    async def get_run(run_id: str) -> dict[str, Any]:
        run = state.lifecycle.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
        return _run_payload(run)

    @app.post(
        "/api/v1/runs/{run_id}/checkout",
        status_code=202,
        tags=["runs"],
        dependencies=[Depends(require_api_key)],
    )
    async def start_checkout(run_id: str) -> dict[str, Any]:
        """Start checkout for a run whose cart is ready."""
        launch_checkout(run_id)
        return {
            "run_id": run_id,
            "status": RunStatus.CHECKOUT_STARTED.value,
            "message": f"Checkout process initiated for run {run_id}.",
            "stream_url": f"/api/v1/runs/{run_id}/stream",
        }

    @app.get(
        "/api/v1/runs/{run_id}/stream",
        tags=["runs"],
        dependencies=[Depends(require_api_key)],
    )
    async def stream_run(run_id: str) -> EventSourceResponse:
        """SSE stream of run events."""
        if state.lifecycle.get_run(run_id) is None:
            raise HTTPException(status_code=404, detail=f"Run {run_id} not found")

        async def event_generator():  # type: ignore[no-untyped-def]
            async for event in state.event_stream.subscribe(run_id):
                yield {
                    "event": event.event_type.value,
                    "data": json.dumps(event.model_dump(mode="json")),
                }

        return EventSourceResponse(event_generator())

    # -------------------------------------------------------------------
    # Slack slash commands
    # -------------------------------------------------------------------

    @app.post("/slack/commands/checkout", tags=["slack"])
    async def slack_checkout_command(
        request: Request,
        x_slack_signature: str | None = Header(default=None),
        x_slack_request_timestamp: str | None = Header(default=None),
    ) -> dict[str, Any]:
        """``/target-checkout [run_id]``: start checkout from Slack."""
        body = await request.body()
        if not verify_slack_request(
            settings.slack_signing_secret,
            x_slack_signature,
            x_slack_request_timestamp,
            body,
        ):
            logger.warning("slack_request_rejected", path=request.url.path)
            raise HTTPException(status_code=401, detail="Invalid Slack signature")

        form = parse_qs(body.decode("utf-8"))
        run_id = form.get("text", [""])[0].strip()
        logger.info(
            "slack_command_received",
            command=form.get("command", [""])[0],
            user=form.get("user_name", [""])[0],
            run_id=run_id,
        )
        if not run_id:
            return ephemeral(CHECKOUT_USAGE)

        try:
            launch_checkout(run_id)
        except HTTPException as exc:
            return checkout_failed_reply(str(exc.detail))
        return checkout_started_reply(run_id)

    # -------------------------------------------------------------------
    # Error handlers
    # -------------------------------------------------------------------

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "unhandled_exception", error=str(exc), path=request.url.path
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="Internal server error",
                detail=str(exc),
                status_code=500,
            ).model_dump(),
        )

    return app
