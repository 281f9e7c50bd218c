# app.py
"""
Read-only dashboard for a benchmark pod: container phases, the tail of the
benchmark output and the latest QPS figure, pushed to browsers over a
WebSocket. It never creates or deletes anything in the cluster.

    BENCH_POD_NAME=opendal-bench python app.py
"""
import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from errors import GatewayError
from gateway import ClusterGateway, make_gateway
from models.job import (
    DEFAULT_INIT_CONTAINER,
    DEFAULT_MAIN_CONTAINER,
    DEFAULT_NAMESPACE,
    DEFAULT_POD_NAME,
    ContainerRole,
    PhaseState,
    PhaseStatus,
    ResourceKind,
    ResourceRef,
)
from results import parse_latest_qps

# --- Basic Setup ---
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent / "templates"))

LOG_TAIL_LINES = 50
ACTIVE_STATES = (PhaseState.RUNNING, PhaseState.TERMINATED)


# --- WebSocket Connection Manager ---
class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"New client connected. Total clients: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        logger.info(f"Client disconnected. Total clients: {len(self.active_connections)}")

    async def broadcast(self, message: str):
        logger.debug(f"Broadcasting message to {len(self.active_connections)} clients.")
        for connection in list(self.active_connections):
            try:
                await connection.send_text(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.warning(f"Dropping client after failed send: {e}")
                self.disconnect(connection)


# --- Data Fetching Logic ---
def _phase_dict(status: PhaseStatus) -> Dict[str, Any]:
    return {"state": status.state.value, "exitCode": status.exit_code}


def build_bundle(gateway: ClusterGateway, pod_ref: ResourceRef,
                 init_container: str = DEFAULT_INIT_CONTAINER,
                 main_container: str = DEFAULT_MAIN_CONTAINER) -> Dict[str, Any]:
    """
    Collects one snapshot of the pod for the frontend.

    The log tail comes from the benchmark container once it has started, and
    from the connectivity check before that.
    """
    init_status = gateway.get_phase(pod_ref, ContainerRole.INIT)
    main_status = gateway.get_phase(pod_ref, ContainerRole.MAIN)
    now = time.time()

    if main_status.state in ACTIVE_STATES:
        container: Optional[str] = main_container
    elif init_status.state in ACTIVE_STATES:
        container = init_container
    else:
        container = None

    qps = None
    if container is None:
        log_lines = [f"[INFO] Waiting for pod '{pod_ref.name}' in namespace '{pod_ref.namespace}'..."]
    else:
        try:
            text = gateway.fetch_logs(pod_ref, container, tail_lines=LOG_TAIL_LINES).decode("utf-8", errors="replace")
            log_lines = text.strip().splitlines() or [f"[INFO] No output from {container} yet."]
            if container == main_container:
                qps = parse_latest_qps(log_lines)
        except GatewayError as e:
            # Happens while the pod is being deleted or recreated.
            logger.debug(f"Could not fetch logs for {container}: {e}")
            log_lines = ["Log stream unavailable..."]

    return {
        "type": "bundle",
        "data": {
            "timestamp": now,
            "pod": pod_ref.name,
            "namespace": pod_ref.namespace,
            "container": container,
            "init": _phase_dict(init_status),
            "main": _phase_dict(main_status),
            "qps": {"timestamp": now, "value": qps},
            "logs": log_lines,
        },
    }


# --- Background Monitoring Task ---
async def monitor_benchmark_pod(app: FastAPI):
    """Periodically snapshots the pod and broadcasts it to connected clients."""
    state = app.state
    while True:
        await asyncio.sleep(state.poll_interval)
        if not state.manager.active_connections:
            continue
        try:
            bundle = await asyncio.to_thread(build_bundle, state.gateway, state.pod_ref)
        except GatewayError as e:
            logger.warning(f"Monitor Task: snapshot failed: {e}")
            continue
        await state.manager.broadcast(json.dumps(bundle))


def create_app(gateway: Optional[ClusterGateway] = None, pod_name: Optional[str] = None,
               namespace: Optional[str] = None, transport: Optional[str] = None,
               poll_interval: Optional[float] = None) -> FastAPI:
    """
    Builds the dashboard. Anything not passed in is read from BENCH_POD_NAME,
    BENCH_NAMESPACE, BENCH_TRANSPORT and BENCH_POLL_INTERVAL. Without an explicit
    gateway one is created on startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.gateway is None:
            app.state.gateway = make_gateway(app.state.transport)
        monitor_task = asyncio.create_task(monitor_benchmark_pod(app))
        yield
        monitor_task.cancel()

    app = FastAPI(title="OpenDAL S3 Benchmark", lifespan=lifespan)
    app.state.gateway = gateway
    app.state.transport = transport or os.environ.get("BENCH_TRANSPORT", "api")
    app.state.pod_ref = ResourceRef(
        ResourceKind.POD,
        pod_name or os.environ.get("BENCH_POD_NAME", DEFAULT_POD_NAME),
        namespace or os.environ.get("BENCH_NAMESPACE", DEFAULT_NAMESPACE),
    )
    app.state.poll_interval = poll_interval or float(os.environ.get("BENCH_POLL_INTERVAL", "2"))
    app.state.manager = ConnectionManager()

    # --- FastAPI Routes ---
    @app.get("/", response_class=HTMLResponse)
    async def read_root(request: Request):
        """Serves the main HTML page."""
        pod_ref = request.app.state.pod_ref
        return templates.TemplateResponse(request, "index.html", {
            "pod_name": pod_ref.name,
            "namespace": pod_ref.namespace,
            "poll_interval": request.app.state.poll_interval,
        })

    @app.get("/api/status")
    async def read_status(request: Request) -> Dict[str, Any]:
        state = request.app.state
        return await asyncio.to_thread(build_bundle, state.gateway, state.pod_ref)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Sends a snapshot right away, then relies on the monitor task for updates."""
        state = websocket.app.state
        await state.manager.connect(websocket)
        try:
            bundle = await asyncio.to_thread(build_bundle, state.gateway, state.pod_ref)
            await websocket.send_text(json.dumps(bundle))
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            state.manager.disconnect(websocket)

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host=os.environ.get("BENCH_DASHBOARD_HOST", "0.0.0.0"),
                port=int(os.environ.get("BENCH_DASHBOARD_PORT", "8000")))
