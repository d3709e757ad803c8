"""
Mining Ops — Configuration
Environment-driven settings shared by the server, the lifecycle sweeps and
the ledger gateway. Read once at import time.
"""

import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


# ══════════════════════════════════════════════════════════════════════════════
# STORAGE
# ══════════════════════════════════════════════════════════════════════════════

DB_PATH = os.environ.get("OPS_DB_PATH", "operations.db")


# ══════════════════════════════════════════════════════════════════════════════
# OPERATION LIFECYCLE
# ══════════════════════════════════════════════════════════════════════════════

# Delay between an end request and actual finalization
GRACE_PERIOD_SECONDS = _env_int("OPS_GRACE_PERIOD_SECONDS", 5)

# No delta-triggering snapshot for this long -> operation is wound down
INACTIVITY_THRESHOLD_SECONDS = _env_int("OPS_INACTIVITY_THRESHOLD_SECONDS", 2 * 60 * 60)

# Freshness guard: young operations need this many update snapshots
WARMUP_SECONDS = _env_int("OPS_WARMUP_SECONDS", 2 * 60)
MIN_WARMUP_UPDATES = _env_int("OPS_MIN_WARMUP_UPDATES", 2)

# Post-end window reported as the 'syncing' display phase
SYNC_WINDOW_SECONDS = _env_int("OPS_SYNC_WINDOW_SECONDS", 10 * 60)

# Background sweep cadence when the server runs its own loop (0 disables it)
SWEEP_INTERVAL_SECONDS = _env_int("OPS_SWEEP_INTERVAL_SECONDS", 60)


# ══════════════════════════════════════════════════════════════════════════════
# AUTH
# ══════════════════════════════════════════════════════════════════════════════

# Shared secret for sweep endpoints and webhook registration (external cron)
SERVICE_TOKEN = os.environ.get("OPS_SERVICE_TOKEN", "")

SESSION_TTL_HOURS = _env_int("OPS_SESSION_TTL_HOURS", 24)


# ══════════════════════════════════════════════════════════════════════════════
# LEDGER GATEWAY (EVE ESI)
# ══════════════════════════════════════════════════════════════════════════════

ESI_BASE_URL = os.environ.get("ESI_BASE_URL", "https://esi.evetech.net/latest")
ESI_MARKET_REGION_ID = _env_int("ESI_MARKET_REGION_ID", 10000002)       # The Forge
ESI_MARKET_LOCATION_ID = _env_int("ESI_MARKET_LOCATION_ID", 60003760)   # Jita IV - Moon 4
ESI_TIMEOUT_SECONDS = _env_int("ESI_TIMEOUT_SECONDS", 10)


# ══════════════════════════════════════════════════════════════════════════════
# SERVER
# ══════════════════════════════════════════════════════════════════════════════

LOG_LEVEL = os.environ.get("OPS_LOG_LEVEL", "INFO").upper()
