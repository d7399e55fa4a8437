from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import Receive, Scope, Send

from reportconv import __version__
from reportconv.config import (
    IDLE_TIMEOUT_SECONDS,
    RESPONSE_WRITE_TIMEOUT_SECONDS,
    SHUTDOWN_GRACE_SECONDS,
    Config,
)
from reportconv.decoder import decode_request
from reportconv.errors import ConversionFailed, ReportConvError, ServerStartupError
from reportconv.invoker import ConversionJob, ToolchainConfig, convert
from reportconv.workspace import Workspace


logger = logging.getLogger("reportconv.server")

PDF_MEDIA_TYPE = "application/pdf"
PDF_FILENAME = "report.pdf"
DISCONNECT_POLL_SECONDS = 0.25
ALLOWED_METHODS = "GET, HEAD, POST"


class ScratchFileResponse(FileResponse):
    """Stream a scratch file, then release the workspace that owns it.

    The workspace is released however sending ends: completed, timed out, or
    aborted by the client.
    """

    def __init__(self, workspace: Workspace, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._workspace = workspace

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await asyncio.wait_for(
                super().__call__(scope, receive, send),
                timeout=RESPONSE_WRITE_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning("timed out sending %s to client", self.path)
        finally:
            self._workspace.release()


async def _watch_disconnect(request: Request, disconnected: asyncio.Event) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)
    logger.info("client disconnected before the conversion finished")
    disconnected.set()


def _log_failure(exc: ReportConvError) -> None:
    if isinstance(exc, ConversionFailed):
        logger.error("failed to execute: %s\n%s", exc, exc.diagnostics or "(no output)")
    elif exc.status_code >= 500:
        logger.error("%s: %s", type(exc).__name__, exc)
    else:
        logger.info("rejected request, %s: %s", type(exc).__name__, exc)


def create_app(config: Config) -> FastAPI:
    """Build the application with *config* bound to its handlers."""

    app = FastAPI(
        title="reportconv",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    toolchain = ToolchainConfig.from_config(config)

    @app.exception_handler(StarletteHTTPException)
    async def _empty_error(request: Request, exc: StarletteHTTPException) -> Response:
        # Framework errors (404, 405) carry no body, same as our own failures.
        headers = dict(getattr(exc, "headers", None) or {})
        if exc.status_code == 405:
            # The router only reports the methods of the first route matching the path.
            headers["Allow"] = ALLOWED_METHODS
        return Response(status_code=exc.status_code, headers=headers)

    @app.api_route("/", methods=["GET", "HEAD"])
    async def index() -> FileResponse:
        return FileResponse(config.index_path, media_type="text/html; charset=utf-8")

    @app.post("/")
    async def convert_report(request: Request) -> Response:
        workspace = Workspace(config.scratch_dir)
        try:
            conversion = await decode_request(request, workspace, config)
            output = workspace.acquire("output")
            job = ConversionJob(
                input_path=conversion.input.path,
                output_path=output.path,
                team_name=conversion.team_name,
                timeout=config.pandoc_timeout,
                toolchain=toolchain,
            )

            disconnected = asyncio.Event()
            watcher = asyncio.create_task(_watch_disconnect(request, disconnected))
            try:
                await convert(job, cancelled=disconnected)
            finally:
                watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher
        except ReportConvError as exc:
            workspace.release()
            _log_failure(exc)
            return Response(status_code=exc.status_code)
        except BaseException:
            workspace.release()
            raise

        logger.info(
            "converted %s report for %s (%s)",
            conversion.source.value,
            conversion.team_id,
            conversion.team_name or "no team name",
        )
        return ScratchFileResponse(
            workspace,
            output.path,
            media_type=PDF_MEDIA_TYPE,
            filename=PDF_FILENAME,
            headers={"Cache-Control": "no-store"},
        )

    return app


class LifecycleState(str, Enum):
    STARTING = "starting"
    SERVING = "serving"
    SHUTTING_DOWN = "shutting down"
    STOPPED = "stopped"


class ReportServer(uvicorn.Server):
    """uvicorn server that tracks its lifecycle state.

    A termination signal moves SERVING to SHUTTING_DOWN; in-flight requests
    then get SHUTDOWN_GRACE_SECONDS before uvicorn cancels them.
    """

    def __init__(self, config: uvicorn.Config) -> None:
        super().__init__(config)
        self.state = LifecycleState.STARTING

    def _transition(self, state: LifecycleState) -> None:
        logger.info("server %s -> %s", self.state.value, state.value)
        self.state = state

    def handle_exit(self, sig, frame) -> None:
        logger.info("received shutdown signal: %s", sig)
        super().handle_exit(sig, frame)

    async def startup(self, sockets=None) -> None:
        logger.info("running server on %s:%s", self.config.host, self.config.port)
        await super().startup(sockets=sockets)
        if not self.should_exit:
            self._transition(LifecycleState.SERVING)

    async def shutdown(self, sockets=None) -> None:
        self._transition(LifecycleState.SHUTTING_DOWN)
        logger.info("attempting to shut down server gracefully")
        try:
            await super().shutdown(sockets=sockets)
        finally:
            self._transition(LifecycleState.STOPPED)


def build_server(config: Config, app: Optional[FastAPI] = None) -> ReportServer:
    uvicorn_config = uvicorn.Config(
        app or create_app(config),
        host=config.host,
        port=config.port,
        timeout_keep_alive=IDLE_TIMEOUT_SECONDS,
        timeout_graceful_shutdown=SHUTDOWN_GRACE_SECONDS,
        log_config=None,
    )
    return ReportServer(uvicorn_config)


def run_server(config: Config) -> None:
    server = build_server(config)
    try:
        server.run()
    except SystemExit as exc:
        # uvicorn exits the process when the listener cannot be bound.
        raise ServerStartupError(f"failed to serve on {config.host}:{config.port}") from exc
    if server.state is not LifecycleState.STOPPED:
        raise ServerStartupError(f"server on {config.host}:{config.port} did not start")


if __name__ == "__main__":
    # Convenience: python server.py serves the working directory with defaults.
    from pathlib import Path

    run_server(Config(app_root=Path.cwd()))
