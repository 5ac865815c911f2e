from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable

import uvicorn
from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from ..errors import ResourceAcquisitionFailure

logger = logging.getLogger(__name__)

WEBHOOK_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]

# (method, path, event) -> (flow_id, run_id), or None when no route matches.
WebhookDispatcher = Callable[[str, str, dict[str, Any]], "tuple[str, str] | None"]


def webhook_key(method: str, path: str) -> tuple[str, str]:
    method = (method or "POST").strip().upper()
    path = "/" + path.strip().lstrip("/")
    if len(path) > 1:
        path = path.rstrip("/")
    return method, path


def _decode_body(raw: bytes, content_type: str) -> Any:
    if not raw:
        return None
    text = raw.decode("utf-8", errors="replace")
    if "json" in content_type:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    return text


def build_webhook_app(dispatch: WebhookDispatcher) -> FastAPI:
    app = FastAPI(title="ForgeFlow webhooks", docs_url=None, redoc_url=None, openapi_url=None)

    @app.api_route("/{path:path}", methods=WEBHOOK_METHODS)
    async def receive(path: str, request: Request) -> JSONResponse:
        raw = await request.body()
        event = {
            "trigger": "webhook",
            "method": request.method,
            "path": "/" + path,
            "query": dict(request.query_params),
            "body": _decode_body(raw, request.headers.get("content-type", "")),
        }
        try:
            matched = await run_in_threadpool(dispatch, request.method, path, event)
        except Exception as exc:
            logger.warning("webhook %s /%s failed: %s", request.method, path, exc)
            return JSONResponse(
                {"status": "error", "message": f"Execution failed: {exc}"},
                status_code=500,
            )
        if matched is None:
            return JSONResponse({"detail": "Not Found"}, status_code=404)

        flow_id, run_id = matched
        return JSONResponse(
            {
                "status": "success",
                "message": "Workflow triggered",
                "flowId": flow_id,
                "executionId": run_id,
            }
        )

    return app


def _serve(server: uvicorn.Server) -> None:
    # uvicorn calls sys.exit when it cannot bind.
    try:
        server.run()
    except SystemExit as exc:
        logger.debug("webhook listener exited with status %s", exc.code)


class WebhookListener:
    """The one HTTP listener shared by every webhook registration."""

    def __init__(
        self,
        dispatch: WebhookDispatcher,
        host: str = "127.0.0.1",
        port: int = 8080,
        startup_timeout: float = 5.0,
        grace_period: float = 5.0,
    ) -> None:
        self.app = build_webhook_app(dispatch)
        self.host = host
        self.port = port
        self.startup_timeout = startup_timeout
        self.grace_period = grace_period
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._server is not None and self._server.started

    def start(self) -> None:
        if self._server is not None:
            return

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            lifespan="off",
            timeout_graceful_shutdown=max(1, int(self.grace_period)),
        )
        server = uvicorn.Server(config)
        thread = threading.Thread(target=_serve, args=(server,), name="webhook-listener", daemon=True)
        thread.start()

        deadline = time.monotonic() + self.startup_timeout
        while not server.started and thread.is_alive() and time.monotonic() < deadline:
            time.sleep(0.05)

        if not server.started:
            server.should_exit = True
            thread.join(1.0)
            raise ResourceAcquisitionFailure(f"webhook listener could not bind {self.host}:{self.port}")

        self._server = server
        self._thread = thread
        logger.info("webhook listener started on %s:%d", self.host, self.port)

    def stop(self, timeout: float | None = None) -> bool:
        server, thread = self._server, self._thread
        if server is None or thread is None:
            return True
        server.should_exit = True
        thread.join(self.grace_period if timeout is None else min(timeout, self.grace_period))
        if thread.is_alive():
            server.force_exit = True
            thread.join(1.0)
        self._server = None
        self._thread = None
        if thread.is_alive():
            logger.warning("webhook listener did not stop cleanly")
            return False
        logger.info("webhook listener stopped")
        return True
