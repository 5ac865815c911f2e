from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .errors import InvalidFlow, InvalidTriggerConfig, NotFound, ResourceAcquisitionFailure
from .models import Execution, ExecutionSummary, Flow, FlowSummary, RunRequest
from .runtime import Runtime


def create_app(runtime: Runtime | None = None, start_triggers: bool = True) -> FastAPI:
    """Management API over one runtime. Usable with ``uvicorn --factory``."""
    runtime = runtime or Runtime.from_config()

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if start_triggers:
            runtime.start()
        try:
            yield
        finally:
            runtime.shutdown()

    app = FastAPI(title="ForgeFlow", version="0.3.0", lifespan=lifespan)
    app.state.runtime = runtime
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
        allow_origin_regex=r"^https?://(127\.0\.0\.1|localhost):\d+$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotFound)
    async def _not_found(_request: Request, exc: NotFound) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=404)

    @app.exception_handler(InvalidFlow)
    @app.exception_handler(InvalidTriggerConfig)
    async def _invalid(_request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=400)

    @app.exception_handler(ResourceAcquisitionFailure)
    async def _unavailable(_request: Request, exc: ResourceAcquisitionFailure) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=409)

    store = runtime.store
    engine = runtime.engine
    triggers = runtime.triggers

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/node-types")
    def list_node_types() -> list[str]:
        return runtime.registry.list_types()

    @app.get("/node-catalog")
    def node_catalog() -> list[dict[str, str]]:
        return runtime.registry.list_specs()

    @app.get("/config")
    def config() -> dict[str, dict[str, object]]:
        return {
            "engine": asdict(engine.settings),
            "triggers": asdict(triggers.settings),
        }

    @app.get("/flows", response_model=list[FlowSummary])
    def list_flows() -> list[FlowSummary]:
        return store.list_flows()

    @app.post("/flows", response_model=Flow)
    def create_flow(flow: Flow) -> Flow:
        if flow.id:
            try:
                store.load_flow(flow.id)
            except NotFound:
                pass
            else:
                raise HTTPException(status_code=409, detail="Flow id already exists")
        saved = store.load_flow(store.save_flow(flow))
        triggers.sync_flow_triggers(saved)
        return saved

    @app.post("/flows/import", response_model=Flow)
    async def import_flow(request: Request, fmt: str = "json") -> Flow:
        text = (await request.body()).decode("utf-8")
        try:
            flow_id = store.import_flow(text, fmt)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return store.load_flow(flow_id)

    @app.get("/flows/{flow_id}", response_model=Flow)
    def get_flow(flow_id: str) -> Flow:
        return store.load_flow(flow_id)

    @app.put("/flows/{flow_id}", response_model=Flow)
    def update_flow(flow_id: str, flow: Flow) -> Flow:
        if flow.id != flow_id:
            raise HTTPException(status_code=400, detail="Flow id mismatch")
        store.load_flow(flow_id)
        saved = store.load_flow(store.save_flow(flow))
        triggers.sync_flow_triggers(saved)
        return saved

    @app.delete("/flows/{flow_id}")
    def delete_flow(flow_id: str) -> dict[str, Any]:
        store.delete_flow(flow_id)
        removed = triggers.unregister_flow_triggers(flow_id)
        return {"id": flow_id, "deleted": True, "triggersRemoved": removed}

    @app.get("/flows/{flow_id}/export", response_class=PlainTextResponse)
    def export_flow(flow_id: str, fmt: str = "json") -> str:
        try:
            return store.export_flow(flow_id, fmt)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/flows/{flow_id}/run", response_model=Execution, status_code=202)
    def run_flow(flow_id: str, request: RunRequest | None = None) -> Execution:
        flow = store.load_flow(flow_id)
        run_id = engine.run(flow, (request or RunRequest()).input_data)
        return engine.get(run_id)

    @app.get("/executions", response_model=list[Execution])
    def list_executions() -> list[Execution]:
        return sorted(engine.list(), key=lambda execution: execution.started_at, reverse=True)

    @app.get("/executions/history", response_model=list[ExecutionSummary])
    def execution_history(limit: int = 50, flow_id: str | None = None) -> list[ExecutionSummary]:
        return store.list_executions(limit=limit, flow_id=flow_id)

    @app.get("/executions/{execution_id}", response_model=Execution)
    def get_execution(execution_id: str) -> Execution:
        try:
            return engine.get(execution_id)
        except NotFound:
            return store.get_execution(execution_id)

    @app.post("/executions/{execution_id}/stop", response_model=Execution)
    def stop_execution(execution_id: str) -> Execution:
        return engine.stop(execution_id)

    @app.delete("/executions/{execution_id}")
    def delete_execution(execution_id: str) -> dict[str, Any]:
        try:
            engine.discard(execution_id)
            tracked = True
        except NotFound:
            tracked = False
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        try:
            store.delete_execution(execution_id)
        except NotFound:
            if not tracked:
                raise
        return {"id": execution_id, "deleted": True}

    @app.get("/triggers")
    def active_triggers() -> dict[str, Any]:
        return triggers.active_triggers()

    @app.get("/settings")
    def get_settings() -> dict[str, Any]:
        return store.load_settings()

    @app.put("/settings")
    def put_settings(settings: dict[str, Any]) -> dict[str, Any]:
        store.save_settings(settings)
        return store.load_settings()

    return app
