"""Application configuration driven by environment variables.

All settings have sensible defaults for local development.
"""

import os

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# ---------------------------------------------------------------------------
# Taste gRPC server (callers connect to us on this address)
# ---------------------------------------------------------------------------

GRPC_SERVER_HOST: str = os.getenv("GRPC_SERVER_HOST", "0.0.0.0")
GRPC_SERVER_PORT: int = int(os.getenv("GRPC_SERVER_PORT", "50061"))

# Thread pool size for the gRPC server.  Each concurrent RPC occupies one
# thread, so this caps concurrent request handling.
GRPC_MAX_WORKERS: int = int(os.getenv("GRPC_MAX_WORKERS", "10"))

# ---------------------------------------------------------------------------
# Upstream services (we connect to them as a gRPC client)
# ---------------------------------------------------------------------------

# Durable event store.  Leave empty to keep everything in process memory.
EVENT_STORE_ADDRESS: str = os.getenv("EVENT_STORE_ADDRESS", "")
EVENT_STORE_TIMEOUT_SECONDS: float = float(os.getenv("EVENT_STORE_TIMEOUT_SECONDS", "10"))

FEATURE_PROVIDER_ADDRESS: str = os.getenv("FEATURE_PROVIDER_ADDRESS", "localhost:50062")
FEATURE_PROVIDER_TIMEOUT_SECONDS: float = float(
    os.getenv("FEATURE_PROVIDER_TIMEOUT_SECONDS", "5")
)

# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

# Run a full recompute on every N-th rating a user submits.
RECOMPUTE_EVERY_N_RATINGS: int = int(os.getenv("RECOMPUTE_EVERY_N_RATINGS", "5"))

# Most recent events analysed per user (hard cap 500).
HISTORY_WINDOW: int = int(os.getenv("HISTORY_WINDOW", "500"))

# Predictions slower than this are logged at WARNING.
PREDICT_WARN_THRESHOLD_MS: float = float(os.getenv("PREDICT_WARN_THRESHOLD_MS", "250"))

# ---------------------------------------------------------------------------
# Feature provider cache
# ---------------------------------------------------------------------------

FEATURE_CACHE_MAXSIZE: int = int(os.getenv("FEATURE_CACHE_MAXSIZE", "10000"))

TRACK_FEATURES_TTL_SECONDS: int = int(
    os.getenv("TRACK_FEATURES_TTL_SECONDS", str(30 * 86400))
)
ALBUM_TTL_SECONDS: int = int(os.getenv("ALBUM_TTL_SECONDS", "86400"))
SEARCH_TTL_SECONDS: int = int(os.getenv("SEARCH_TTL_SECONDS", "3600"))
ARTIST_TTL_SECONDS: int = int(os.getenv("ARTIST_TTL_SECONDS", str(7 * 86400)))
