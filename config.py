"""Configuration for the queue engine.

All settings come from environment variables with sensible defaults so the
service runs locally against a SQLite file with caching disabled.  Set
``DATABASE_URL`` to a ``postgresql://`` URL and ``REDIS_URL`` for
production deployments.
"""

from __future__ import annotations

import os
from datetime import time

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "queue.db")

# ============================================================================
# STORAGE
# ============================================================================

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DEFAULT_DB_FILENAME}")
REDIS_URL = os.getenv("REDIS_URL")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# How long a booking waits for its partition before giving up (seconds)
TOKEN_LOCK_TIMEOUT = float(os.getenv("TOKEN_LOCK_TIMEOUT", "5"))

# ============================================================================
# CACHE TTLs (seconds)
# ============================================================================

QUEUE_STATUS_TTL = int(os.getenv("QUEUE_STATUS_TTL", "30"))
QUEUE_POSITION_TTL = int(os.getenv("QUEUE_POSITION_TTL", "30"))
WAIT_ESTIMATE_TTL = int(os.getenv("WAIT_ESTIMATE_TTL", "300"))
SERVICE_RATE_TTL = int(os.getenv("SERVICE_RATE_TTL", "3600"))
ARRIVAL_RATE_TTL = int(os.getenv("ARRIVAL_RATE_TTL", "300"))

# ============================================================================
# RATE ESTIMATION
# ============================================================================

SERVICE_RATE_WINDOW_DAYS = int(os.getenv("SERVICE_RATE_WINDOW_DAYS", "7"))

# Below this many completions the default service rate is used
MIN_SERVICE_SAMPLES = int(os.getenv("MIN_SERVICE_SAMPLES", "5"))
DEFAULT_SERVICE_RATE = float(os.getenv("DEFAULT_SERVICE_RATE", "4.0"))  # patients/hour
MIN_SERVICE_RATE = float(os.getenv("MIN_SERVICE_RATE", "0.1"))  # at most 10 hours per patient

MIN_ARRIVAL_SAMPLES = int(os.getenv("MIN_ARRIVAL_SAMPLES", "1"))
DEFAULT_ARRIVAL_RATE = float(os.getenv("DEFAULT_ARRIVAL_RATE", "0.0"))  # patients/hour

# Used when a provider has no schedule rows
DEFAULT_OPERATING_HOURS = float(os.getenv("DEFAULT_OPERATING_HOURS", "8.0"))
DEFAULT_DAY_START = time.fromisoformat(os.getenv("DEFAULT_DAY_START", "08:00"))
DEFAULT_DAY_END = time.fromisoformat(os.getenv("DEFAULT_DAY_END", "16:00"))

# ============================================================================
# ANALYTICS & INVARIANTS
# ============================================================================

HIGH_UTILIZATION_THRESHOLD = float(os.getenv("HIGH_UTILIZATION_THRESHOLD", "0.85"))
UTILIZATION_TOLERANCE = float(os.getenv("UTILIZATION_TOLERANCE", "1e-4"))
LITTLE_LAW_TOLERANCE = float(os.getenv("LITTLE_LAW_TOLERANCE", "1e-6"))

# ============================================================================
# DAILY AGGREGATION
# ============================================================================

AGGREGATION_HOUR = int(os.getenv("AGGREGATION_HOUR", "23"))
AGGREGATION_MINUTE = int(os.getenv("AGGREGATION_MINUTE", "55"))
ENABLE_SCHEDULER = os.getenv("ENABLE_SCHEDULER", "true").lower() in ("1", "true", "yes")
