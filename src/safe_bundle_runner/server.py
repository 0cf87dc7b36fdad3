"""HTTP boundary for rendering fragment bundles.

Run with `uvicorn --factory safe_bundle_runner.server:create_app` or
`python -m sbr serve`.
"""

from __future__ import annotations

import asyncio
import os
import re
import threading
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, ConfigDict, Field, StrictStr

from . import __version__
from .collaborators import AuthenticationFailed, FragmentBundle, FragmentStore, IdentityProvider
from .composer import render_document
from .execution.errors import ExecutionCancelled, GateFull, ValidationError
from .execution.types import (
    DEFAULT_TITLE,
    ExecutionRequest,
    ExecutionResult,
    RuntimeFailure,
    StaticDocument,
    Success,
    SystemFailure,
    Timeout,
)
from .logging_setup import configure_logging
from .policy import SandboxPolicy
from .runner import BundleRunner
from .session import SessionContext, SessionResolver

logger = structlog.get_logger(__name__)

POLICY_FILE_ENV = "SBR_POLICY_FILE"
REQUEST_ID_HEADER = "X-Request-Id"
TRUNCATED_HEADER = "X-Output-Truncated"
STATUS_CLIENT_CLOSED_REQUEST = 499
SYSTEM_ERROR_MESSAGE = "The execution could not be completed. The failure has been logged."
_DISCONNECT_POLL_SECONDS = 0.25
_UNSAFE_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|\r\n]+')


class BundlePayload(BaseModel):
    """JSON body accepted by the execute endpoint.

    Example:
        ```python
        payload = BundlePayload.model_validate({"markup": "<p>hi</p>", "serverScript": ""})
        ```
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    markup: StrictStr = ""
    style: StrictStr = ""
    client_script: StrictStr = Field(default="", alias="clientScript")
    server_script: StrictStr = Field(default="", alias="serverScript")
    title: StrictStr | None = None

    def to_request(self) -> ExecutionRequest:
        """Build an execution request with a fresh request id.

        Example:
            ```python
            request = payload.to_request()
            ```
        """
        return ExecutionRequest(
            markup=self.markup,
            style=self.style,
            client_script=self.client_script,
            server_script=self.server_script,
            title=self.title or DEFAULT_TITLE,
        )


def render_outcome(outcome: StaticDocument | ExecutionResult, timeout_seconds: float) -> Response:
    """Translate a runner outcome into the HTTP contract.

    Example:
        ```python
        response = render_outcome(Success(output=b"ok"), timeout_seconds=10)
        ```
    """
    if isinstance(outcome, StaticDocument):
        return HTMLResponse(outcome.html)
    if isinstance(outcome, Success):
        headers = {TRUNCATED_HEADER: "true"} if outcome.truncated else None
        return Response(content=outcome.output, media_type="text/html", headers=headers)
    if isinstance(outcome, RuntimeFailure):
        body = f"{outcome.kind}\n\nExit code: {outcome.exit_code}\n\n{outcome.stderr}"
    elif isinstance(outcome, Timeout):
        body = (
            f"{outcome.kind}\n\nExecution exceeded the {timeout_seconds:g}s limit "
            f"and was stopped after {outcome.elapsed_ms} ms"
        )
    elif isinstance(outcome, SystemFailure):
        # The reason can name internal paths; it stays in the server log.
        body = f"{outcome.kind}\n\n{SYSTEM_ERROR_MESSAGE}"
    else:
        raise TypeError(f"Unknown execution outcome: {outcome!r}")
    return PlainTextResponse(body, status_code=500)


def _attachment_filename(title: str) -> str:
    """Derive a header-safe download filename from a project title.

    Example:
        ```python
        _attachment_filename("My: Demo")  # "My_ Demo.html"
        ```
    """
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", title).strip() or DEFAULT_TITLE
    return f"{cleaned}.html"


def _policy_from_env() -> SandboxPolicy:
    """Load the policy named by SBR_POLICY_FILE, or the bundled defaults.

    Example:
        ```python
        policy = _policy_from_env()
        ```
    """
    path = os.environ.get(POLICY_FILE_ENV)
    return SandboxPolicy.from_file(path) if path else SandboxPolicy()


async def run_request(
    runner: BundleRunner,
    request: ExecutionRequest,
    session: SessionContext,
    http_request: Request,
) -> Response:
    """Execute on a worker thread, cancelling if the client goes away.

    Example:
        ```python
        response = await run_request(runner, payload.to_request(), session, http_request)
        ```
    """
    cancel = threading.Event()
    task = asyncio.ensure_future(asyncio.to_thread(runner.execute, request, session, cancel))
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=_DISCONNECT_POLL_SECONDS)
            if done:
                break
            if not cancel.is_set() and await http_request.is_disconnected():
                logger.info("client_disconnected", request_id=request.request_id)
                cancel.set()
        outcome = task.result()
    except asyncio.CancelledError:
        cancel.set()
        raise
    except ValidationError as exc:
        response: Response = PlainTextResponse(str(exc), status_code=exc.status_code)
    except GateFull as exc:
        logger.warning("admission_rejected", request_id=request.request_id, reason=str(exc))
        response = PlainTextResponse(
            f"queue_full\n\n{exc}",
            status_code=429,
            headers={"Retry-After": str(exc.retry_after)},
        )
    except ExecutionCancelled:
        response = PlainTextResponse("cancelled", status_code=STATUS_CLIENT_CLOSED_REQUEST)
    else:
        response = render_outcome(outcome, runner.policy.timeout_seconds)
    response.headers[REQUEST_ID_HEADER] = request.request_id
    return response


def create_app(
    policy: SandboxPolicy | None = None,
    *,
    runner: BundleRunner | None = None,
    identity: IdentityProvider | None = None,
    store: FragmentStore | None = None,
    configure_logs: bool = True,
) -> FastAPI:
    """Build the FastAPI application around one BundleRunner.

    Example:
        ```python
        app = create_app(SandboxPolicy(interpreter="php", max_concurrency=8))
        ```
    """
    if runner is None:
        runner = BundleRunner(policy or _policy_from_env())
    active_policy = runner.policy
    if configure_logs:
        configure_logging(active_policy.log_level, active_policy.log_format)
    resolver = SessionResolver(identity)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Log service start and stop around the app lifetime.

        Example:
            ```python
            app = FastAPI(lifespan=lifespan)
            ```
        """
        logger.info(
            "service_starting",
            interpreter=runner.profile.name,
            max_concurrency=runner.gate.limit,
            scratch_root=str(runner.workspaces.root),
        )
        yield
        logger.info("service_stopped")

    app = FastAPI(title="safe-bundle-runner", version=__version__, lifespan=lifespan)
    app.state.runner = runner

    @app.exception_handler(RequestValidationError)
    async def _malformed_body(request: Request, exc: RequestValidationError) -> PlainTextResponse:
        """Report malformed bodies as plain-text 400 responses.

        Example:
            ```python
            # POST /execute with {"markup": 1} -> 400
            ```
        """
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', 'invalid')}"
            for err in exc.errors()
        )
        return PlainTextResponse(f"Malformed request: {problems}", status_code=400)

    def resolve_session(authorization: str | None = Header(default=None)) -> SessionContext:
        """Resolve the caller's session from the Authorization header.

        Example:
            ```python
            session = resolve_session("Bearer abc")
            ```
        """
        try:
            return resolver.resolve(authorization)
        except LookupError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
        except AuthenticationFailed as exc:
            raise HTTPException(status_code=403, detail="Invalid token") from exc

    def load_bundle(project_id: str, session: SessionContext) -> FragmentBundle:
        """Fetch a stored bundle visible to the session or raise 404.

        Example:
            ```python
            bundle = load_bundle("7", session)
            ```
        """
        if store is None:
            raise HTTPException(status_code=404, detail="Project not found")
        try:
            bundle = store.read(project_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Project not found") from exc
        if session.principal is not None and bundle.owner_id != session.principal.principal_id:
            raise HTTPException(status_code=404, detail="Project not found")
        return bundle

    @app.post("/execute")
    async def execute(
        payload: BundlePayload,
        http_request: Request,
        session: SessionContext = Depends(resolve_session),
    ) -> Response:
        """Render a submitted fragment bundle.

        Example:
            ```python
            client.post("/execute", json={"serverScript": "<?php echo 'ok'; ?>"})
            ```
        """
        return await run_request(runner, payload.to_request(), session, http_request)

    @app.post("/projects/{project_id}/execute")
    async def execute_project(
        project_id: str,
        http_request: Request,
        session: SessionContext = Depends(resolve_session),
    ) -> Response:
        """Render a bundle loaded from the fragment store.

        Example:
            ```python
            client.post("/projects/7/execute")
            ```
        """
        bundle = await asyncio.to_thread(load_bundle, project_id, session)
        return await run_request(runner, bundle.to_request(), session, http_request)

    @app.get("/projects/{project_id}/export")
    def export_project(
        project_id: str,
        session: SessionContext = Depends(resolve_session),
    ) -> HTMLResponse:
        """Download the static document of a stored bundle.

        Example:
            ```python
            client.get("/projects/7/export")
            ```
        """
        bundle = load_bundle(project_id, session)
        html = render_document(bundle.to_request())
        filename = _attachment_filename(bundle.title)
        return HTMLResponse(html, headers={"Content-Disposition": f'attachment; filename="{filename}"'})

    @app.get("/health")
    def health() -> JSONResponse:
        """Report interpreter and admission gate occupancy.

        Example:
            ```python
            client.get("/health").json()["in_use"]
            ```
        """
        stats = runner.gate.stats()
        payload: dict[str, Any] = {
            "status": "ok",
            "interpreter": runner.profile.name,
            "max_concurrency": stats.limit,
            "in_use": stats.in_use,
            "waiting": stats.waiting,
        }
        return JSONResponse(payload)

    return app
