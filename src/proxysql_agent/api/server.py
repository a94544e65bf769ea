"""
Probe and prestop HTTP server.

Routes:
    GET  /healthz/started   ping only                       200 | 502
    GET  /healthz/ready     ready only when status is ok    200 | 503
    GET  /healthz/live      alive when ok or draining       200 | 503
    POST /shutdown          prestop hook                    200 | 500
    GET  /shutdown          same, for exec-less prestop hooks
"""

import asyncio
import contextlib
import logging
from collections.abc import Iterator

import uvicorn
from fastapi import APIRouter, FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from proxysql_agent import __version__
from proxysql_agent.core.config import ApiConfig
from proxysql_agent.core.errors import ProbeError
from proxysql_agent.core.types import ProbeResult, ProbeStatus
from proxysql_agent.health.probes import ProbeAggregator, ProbeOutcome
from proxysql_agent.shutdown.orchestrator import ShutdownOrchestrator

logger = logging.getLogger(__name__)

# Bound on how long a prestop request waits for the proxy to stop.
PRESTOP_TIMEOUT_SECONDS = 10.0

router = APIRouter()


class ShutdownResponse(BaseModel):
    """Prestop hook response."""

    success: bool
    message: str
    drained: bool = False
    errors: list[str] = []


def _probes(request: Request) -> ProbeAggregator:
    return request.app.state.probes


def _log_probe(request: Request, outcome: ProbeOutcome) -> None:
    if not request.app.state.log_probes:
        return
    result = outcome.result
    logger.info(
        f"{result.probe} probe: {result.status.value} ({result.message})",
        extra={"extra_fields": result.model_dump(mode="json")},
    )


def _respond(outcome: ProbeOutcome, failure_code: int) -> JSONResponse:
    code = status.HTTP_200_OK if outcome.passed else failure_code
    return JSONResponse(status_code=code, content=outcome.result.model_dump(mode="json"))


def _probe_failure(probe: str, error: ProbeError, code: int) -> JSONResponse:
    logger.error(f"{probe} probe failed: {error}")
    result = ProbeResult(status=ProbeStatus.UNHEALTHY, message=str(error), probe=probe)
    return JSONResponse(status_code=code, content=result.model_dump(mode="json"))


@router.get("/healthz/started")
async def started(request: Request):
    """Startup probe: the admin interface answers."""
    try:
        outcome = await _probes(request).startup()
    except ProbeError as e:
        return _probe_failure("startup", e, status.HTTP_502_BAD_GATEWAY)
    _log_probe(request, outcome)
    return _respond(outcome, status.HTTP_502_BAD_GATEWAY)


@router.get("/healthz/ready")
async def ready(request: Request):
    """Readiness probe: only `ok` receives traffic."""
    try:
        outcome = await _probes(request).readiness()
    except ProbeError as e:
        return _probe_failure("readiness", e, status.HTTP_503_SERVICE_UNAVAILABLE)
    _log_probe(request, outcome)
    return _respond(outcome, status.HTTP_503_SERVICE_UNAVAILABLE)


@router.get("/healthz/live")
async def live(request: Request):
    """Liveness probe: draining is still alive."""
    try:
        outcome = await _probes(request).liveness()
    except ProbeError as e:
        return _probe_failure("liveness", e, status.HTTP_503_SERVICE_UNAVAILABLE)
    _log_probe(request, outcome)
    return _respond(outcome, status.HTTP_503_SERVICE_UNAVAILABLE)


@router.api_route("/shutdown", methods=["GET", "POST"], response_model=ShutdownResponse)
async def shutdown(request: Request):
    """
    Prestop hook.

    Runs (or joins) the shutdown sequence and answers once the proxy has
    stopped, or when the request bound expires.
    """
    orchestrator: ShutdownOrchestrator = request.app.state.orchestrator
    logger.info("Prestop request received")

    try:
        result = await asyncio.wait_for(
            asyncio.shield(orchestrator.request_stop("prestop")),
            timeout=PRESTOP_TIMEOUT_SECONDS,
        )
    except TimeoutError:
        body = ShutdownResponse(
            success=False,
            message=f"shutdown still in progress after {PRESTOP_TIMEOUT_SECONDS:.0f}s",
        )
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body.model_dump())

    if not result.success:
        body = ShutdownResponse(
            success=False,
            message=result.first_error or "shutdown failed",
            drained=result.drained,
            errors=result.errors,
        )
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body.model_dump())

    return ShutdownResponse(success=True, message="shutdown complete", drained=result.drained)


def create_app(
    probes: ProbeAggregator,
    orchestrator: ShutdownOrchestrator,
    log_probes: bool = False,
) -> FastAPI:
    """Build the probe application around an agent's probes and shutdown orchestrator."""
    app = FastAPI(
        title="ProxySQL Agent",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )
    app.state.probes = probes
    app.state.orchestrator = orchestrator
    app.state.log_probes = log_probes
    app.include_router(router)
    return app


class _AgentServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the agent."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        pass


class UvicornTransport:
    """
    Runs the app under uvicorn inside the agent's event loop.

    Usage:
        transport = UvicornTransport(app, settings.api)
        transport.start()
        orchestrator.register_transport(transport)
    """

    def __init__(self, app: FastAPI, config: ApiConfig):
        self.server = _AgentServer(
            uvicorn.Config(
                app,
                host=config.host,
                port=config.port,
                log_config=None,
                access_log=False,
                lifespan="off",
            )
        )
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self.server.serve())
            logger.info(f"HTTP server listening on {self.server.config.host}:{self.server.config.port}")
        return self._task

    async def stop(self) -> None:
        """Ask uvicorn to exit and wait for it."""
        if self._task is None:
            return
        self.server.should_exit = True
        await self._task
