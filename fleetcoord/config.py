"""
Fleet Coordinator — Configuration
Central coordinator for a fleet of remote workers with upstream failover.
All values can be overridden through FLEET_* environment variables.
"""

import json
import os

# === Identity ===
COORDINATOR_NAME = os.environ.get("FLEET_COORDINATOR_NAME", "fleetcoord")

# === Network ===
CHANNEL_HOST = os.environ.get("FLEET_CHANNEL_HOST", "0.0.0.0")
CHANNEL_PORT = int(os.environ.get("FLEET_CHANNEL_PORT", "9750"))
TOOL_SERVER_HOST = os.environ.get("FLEET_TOOL_HOST", "127.0.0.1")
TOOL_SERVER_PORT = int(os.environ.get("FLEET_TOOL_PORT", "9760"))
CHANNEL_MAX_LINE = 64 * 1024  # bytes; longer frames are dropped as malformed

# === Worker Health ===
HEALTH_SILENCE_THRESHOLD = int(os.environ.get("FLEET_HEALTH_SILENCE", "300"))  # 5 min
HEALTH_IDLE_THRESHOLD = int(os.environ.get("FLEET_HEALTH_IDLE", "120"))  # 2 min
HEALTH_TEMP_LIMIT = float(os.environ.get("FLEET_HEALTH_TEMP_LIMIT", "85.0"))
HEALTH_POWER_LIMIT = float(os.environ.get("FLEET_HEALTH_POWER_LIMIT", "300.0"))
HEALTH_EFFICIENCY_FLOOR = float(os.environ.get("FLEET_HEALTH_EFFICIENCY_FLOOR", "0.001"))
HEALTH_REJECTION_LIMIT = float(os.environ.get("FLEET_HEALTH_REJECTION_LIMIT", "0.10"))

# --- Staleness sweep ---
SWEEP_INTERVAL = int(os.environ.get("FLEET_SWEEP_INTERVAL", "60"))  # seconds
STALE_THRESHOLD = int(os.environ.get("FLEET_STALE_THRESHOLD", "600"))  # 10 min

# === Upstream Failover ===
FAILOVER_THRESHOLD = int(os.environ.get("FLEET_FAILOVER_THRESHOLD", "3"))  # consecutive failures
FAILOVER_COOLDOWN = float(os.environ.get("FLEET_FAILOVER_COOLDOWN", "30"))  # seconds between rotations
FAILOVER_SETTLE_DELAY = float(os.environ.get("FLEET_FAILOVER_SETTLE", "5"))  # ignore startup noise

# Ordered candidates; lower priority wins. Override with a JSON list in FLEET_UPSTREAMS.
DEFAULT_UPSTREAMS = [
    {"id": "primary", "address": "tcp://upstream-a.example.net:3333", "priority": 0,
     "credential_ref": "upstream-a"},
    {"id": "secondary", "address": "tcp://upstream-b.example.net:3333", "priority": 1,
     "credential_ref": "upstream-b"},
    {"id": "tertiary", "address": "tcp://upstream-c.example.net:443", "priority": 2,
     "credential_ref": "upstream-c"},
]


def load_upstreams():
    """Upstream endpoint dicts from FLEET_UPSTREAMS, falling back to defaults."""
    raw = os.environ.get("FLEET_UPSTREAMS", "").strip()
    if not raw:
        return [dict(u) for u in DEFAULT_UPSTREAMS]
    data = json.loads(raw)
    if not isinstance(data, list) or not data:
        raise ValueError("FLEET_UPSTREAMS must be a non-empty JSON list")
    return data


# === Worker Defaults ===
DEFAULT_GROUP = "default"
DEFAULT_WORKER_CONFIG = {
    "execution": {
        "enabled": True,
        "intensity": 80,
        "upstream": "default",
    },
    "monitoring": {
        "reportInterval": 30,
        "healthCheckInterval": 60,
        "maxTemperature": HEALTH_TEMP_LIMIT,
        "maxPower": HEALTH_POWER_LIMIT,
    },
}

# === Persistence ===
STORE_PATH = os.environ.get("FLEET_STORE_PATH", "fleet_registry.db")

# === Alerting ===
ALERT_WEBHOOK_URL = os.environ.get("FLEET_ALERT_WEBHOOK", "")
ALERT_TIMEOUT = 5

# === Logging ===
LOG_FILE = os.environ.get("FLEET_LOG_FILE", "/tmp/fleetcoord.log")
LOG_LEVEL = os.environ.get("FLEET_LOG_LEVEL", "INFO")
