"""Fleet Coordinator — Operator Tool Server

Port 9760 (tools, streamable HTTP) and 9750 (worker channels, TCP).
Builds the one coordinator for this process, starts the worker listener and
staleness sweep, and exposes fleet queries and commands as MCP tools.

Environment variables:
    FLEET_CHANNEL_HOST / FLEET_CHANNEL_PORT   Worker listener (default: 0.0.0.0:9750)
    FLEET_TOOL_HOST / FLEET_TOOL_PORT         Tool server (default: 127.0.0.1:9760)
    FLEET_UPSTREAMS                           JSON list of upstream endpoints
    FLEET_STORE_PATH                          SQLite snapshot file
    FLEET_ALERT_WEBHOOK                       Alert webhook URL (optional)
"""

import atexit
import json
import logging
import sys
from typing import Optional

from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from fleetcoord.aggregator import FleetAggregator
from fleetcoord.alerts import AlertClient
from fleetcoord.config import (
    CHANNEL_HOST, CHANNEL_PORT, COORDINATOR_NAME, FAILOVER_COOLDOWN, FAILOVER_THRESHOLD,
    HEALTH_EFFICIENCY_FLOOR, HEALTH_POWER_LIMIT, HEALTH_REJECTION_LIMIT,
    HEALTH_SILENCE_THRESHOLD, HEALTH_TEMP_LIMIT, LOG_FILE, LOG_LEVEL,
    TOOL_SERVER_HOST, TOOL_SERVER_PORT, load_upstreams,
)
from fleetcoord.coordinator import Coordinator
from fleetcoord.errors import FleetError
from fleetcoord.events import EventBus
from fleetcoord.failover import FailoverController
from fleetcoord.models import build_command
from fleetcoord.registry import WorkerRegistry
from fleetcoord.store import SnapshotStore
from fleetcoord.transport import ChannelServer
from fleetcoord.upstreams import UpstreamRegistry

logger = logging.getLogger("fleetcoord")

mcp = FastMCP(
    "Fleet Coordinator",
    port=TOOL_SERVER_PORT,
    host=TOOL_SERVER_HOST,
)

_coordinator: Optional[Coordinator] = None
_channel_server: Optional[ChannelServer] = None


def setup_logging():
    handlers = [logging.FileHandler(LOG_FILE, encoding="utf-8")]
    # Only add StreamHandler if stdout is a TTY (avoids double-logging under nohup)
    if sys.stdout.isatty():
        handlers.append(logging.StreamHandler(sys.stdout))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=handlers,
    )


def build_coordinator(store=None, alerts=None, executor=None, upstreams=None) -> Coordinator:
    """Wire registry, failover, aggregator and events into a Coordinator."""
    registry = WorkerRegistry(
        store=store,
        health_options={
            "silence_threshold": HEALTH_SILENCE_THRESHOLD,
            "temp_limit": HEALTH_TEMP_LIMIT,
            "power_limit": HEALTH_POWER_LIMIT,
            "efficiency_floor": HEALTH_EFFICIENCY_FLOOR,
            "rejection_limit": HEALTH_REJECTION_LIMIT,
        },
    )
    failover = FailoverController(
        UpstreamRegistry(upstreams if upstreams is not None else load_upstreams()),
        threshold=FAILOVER_THRESHOLD,
        cooldown=FAILOVER_COOLDOWN,
    )
    return Coordinator(
        registry, failover,
        events=EventBus(),
        aggregator=FleetAggregator(registry),
        executor=executor,
        alerts=alerts,
    )


def get_coordinator() -> Coordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = build_coordinator(store=SnapshotStore(), alerts=AlertClient())
    return _coordinator


def _shutdown():
    if _channel_server is not None:
        _channel_server.stop()
    if _coordinator is not None:
        _coordinator.stop()

atexit.register(_shutdown)


def _error(e: Exception) -> str:
    return json.dumps({"error": str(e), "type": type(e).__name__})


# ── FLEET ──────────────────────────────────────────────────────────

@mcp.tool()
def fleet_status() -> str:
    """Fleet overview: worker counts by status and health, totals, active upstream.
    Run this first to see whether the fleet is reporting."""
    coord = get_coordinator()
    status = {
        "server": COORDINATOR_NAME,
        "channel": {"host": CHANNEL_HOST, "port": CHANNEL_PORT},
        "snapshot": coord.snapshot().model_dump(),
        "failover": coord.get_failover_status(),
        "channels": coord.get_stats(),
    }
    return json.dumps(status, indent=2)


@mcp.tool()
def fleet_report() -> str:
    """One-paragraph plain-language summary of the fleet."""
    return get_coordinator().fleet_report()


@mcp.tool()
def list_workers(group: str = "", status: str = "", health: str = "") -> str:
    """List workers, optionally filtered.

    Args:
        group: Only workers in this group
        status: online, idle or offline
        health: healthy, warning or critical
    """
    try:
        workers = get_coordinator().list_workers(
            group=group or None, status=status or None, health=health or None)
    except ValueError as e:
        return _error(e)
    return json.dumps({
        "count": len(workers),
        "workers": [
            {
                "id": w.id,
                "name": w.display_name,
                "group": w.group,
                "status": w.status.value,
                "health": w.health.classification.value,
                "score": w.health.score,
                "connected": w.connected,
                "throughput": w.metrics.throughput,
                "last_seen_at": w.last_seen_at,
            }
            for w in workers
        ],
    }, indent=2)


@mcp.tool()
def get_worker(worker_id: str) -> str:
    """Full record for one worker, including health issues and config."""
    try:
        return json.dumps(get_coordinator().get_worker(worker_id).model_dump(mode="json"), indent=2)
    except FleetError as e:
        return _error(e)


@mcp.tool()
def list_groups() -> str:
    """Worker groups and their members."""
    groups = get_coordinator().list_groups()
    return json.dumps([g.model_dump() for g in groups], indent=2)


# ── FAILOVER ───────────────────────────────────────────────────────

@mcp.tool()
def failover_status() -> str:
    """Active upstream, consecutive failures, phase and whether rotation is paused."""
    return json.dumps(get_coordinator().get_failover_status(), indent=2)


@mcp.tool()
def force_rotate() -> str:
    """Rotate to the next upstream now. Skips the cooldown and clears an exhausted pause."""
    return json.dumps(get_coordinator().force_rotate(), indent=2)


@mcp.tool()
def report_local_output(line: str) -> str:
    """Feed one line of local process output into upstream failure detection."""
    decision = get_coordinator().report_local_failure_line(line)
    if decision is None:
        return json.dumps({"action": "ignored"})
    return json.dumps({"action": decision.action.value,
                       "state": decision.state.model_dump(mode="json")})


@mcp.tool()
def report_local_success() -> str:
    """Signal that the local process made progress on the active upstream."""
    decision = get_coordinator().report_local_success()
    return json.dumps({"action": decision.action.value,
                       "state": decision.state.model_dump(mode="json")})


# ── COMMANDS ───────────────────────────────────────────────────────

@mcp.tool()
def send_command(worker_id: str, command_type: str, payload: str = "") -> str:
    """Send one command to a worker.

    Args:
        worker_id: Target worker id
        command_type: start, stop, configure, restart or requestStatus
        payload: Optional JSON object of command fields, e.g. {"params": {...}}
    """
    try:
        fields = json.loads(payload) if payload else {}
        command = build_command(command_type, **fields)
        sent = get_coordinator().send_command(worker_id, command)
    except (FleetError, ValueError, TypeError) as e:
        return _error(e)
    return json.dumps({"worker_id": worker_id, "command": command_type, "sent": sent})


@mcp.tool()
def broadcast_command(command_type: str, payload: str = "", group: str = "") -> str:
    """Send a command to every connected worker, or to one group."""
    try:
        fields = json.loads(payload) if payload else {}
        command = build_command(command_type, **fields)
    except (ValueError, TypeError) as e:
        return _error(e)
    delivered = get_coordinator().broadcast_command(command, group=group or None)
    return json.dumps({"command": command_type, "group": group or None, "delivered": delivered})


@mcp.tool()
def update_worker_config(worker_id: str, settings: str) -> str:
    """Merge a JSON settings object into a worker's config and push it to the worker."""
    try:
        parsed = json.loads(settings)
        if not isinstance(parsed, dict):
            raise ValueError("settings must be a JSON object")
        pushed = get_coordinator().update_worker_config(worker_id, parsed)
    except (FleetError, ValueError) as e:
        return _error(e)
    return json.dumps({"worker_id": worker_id, "updated": True, "pushed": pushed})


# ── OPERATOR ───────────────────────────────────────────────────────

@mcp.tool()
def reset_worker_counters(worker_id: str) -> str:
    """Zero a worker's accepted/rejected counters."""
    try:
        record = get_coordinator().reset_counters(worker_id)
    except FleetError as e:
        return _error(e)
    return json.dumps({"worker_id": record.id, "metrics": record.metrics.model_dump()})


@mcp.tool()
def create_group(name: str, description: str = "") -> str:
    """Create a worker group (or update its description)."""
    return json.dumps(get_coordinator().create_group(name, description).model_dump())


@mcp.tool()
def set_worker_group(worker_id: str, group: str) -> str:
    """Move a worker into a group, creating the group if needed."""
    try:
        record = get_coordinator().assign_group(worker_id, group)
    except FleetError as e:
        return _error(e)
    return json.dumps({"worker_id": record.id, "group": record.group})


@mcp.tool()
def remove_worker(worker_id: str) -> str:
    """Forget a worker. It reappears if it registers again."""
    removed = get_coordinator().remove_worker(worker_id)
    return json.dumps({"worker_id": worker_id, "removed": removed})


# ── HTTP API (remote dashboards) ───────────────────────────────────

@mcp.custom_route("/api/fleet", methods=["GET"])
async def fleet_api(request: Request) -> JSONResponse:
    """Snapshot plus failover state for remote monitors."""
    coord = get_coordinator()
    return JSONResponse({
        "snapshot": coord.snapshot().model_dump(),
        "failover": coord.get_failover_status(),
    })


@mcp.custom_route("/api/workers", methods=["GET"])
async def workers_api(request: Request) -> JSONResponse:
    """Worker records. Usage: /api/workers?group=gpu&status=online&health=warning"""
    params = request.query_params
    try:
        workers = get_coordinator().list_workers(
            group=params.get("group") or None,
            status=params.get("status") or None,
            health=params.get("health") or None,
        )
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse([w.model_dump(mode="json") for w in workers])


@mcp.custom_route("/api/rotate", methods=["POST"])
async def rotate_api(request: Request) -> JSONResponse:
    """Operator upstream rotation over HTTP."""
    return JSONResponse(get_coordinator().force_rotate())


# ── MAIN ───────────────────────────────────────────────────────────

def main():
    global _channel_server
    setup_logging()
    coord = get_coordinator()
    coord.start()

    _channel_server = ChannelServer(coord, CHANNEL_HOST, CHANNEL_PORT)
    if not _channel_server.start():
        logger.error("Worker listener failed to start; tools remain available")

    logger.info(f"Fleet Coordinator tool server starting on {TOOL_SERVER_HOST}:{TOOL_SERVER_PORT}")
    mcp.run(transport="streamable-http")


if __name__ == "__main__":
    main()
