"""Configuration for the offer analysis core and its persistence service."""

import os
from pathlib import Path

# ── Paths / URLs ─────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATABASE_PATH = os.environ.get("DATABASE_PATH", str(PROJECT_ROOT / "data" / "analyses.db"))
API_BASE_URL = os.environ.get("OFFER_ANALYSIS_API_URL", "http://localhost:3001")
PORT = int(os.environ.get("PORT", 3001))

# ── Locks ────────────────────────────────────────────────────
LOCK_TTL_MINUTES = float(os.environ.get("LOCK_TTL_MINUTES", 30))
HEARTBEAT_INTERVAL_MINUTES = float(os.environ.get("HEARTBEAT_INTERVAL_MINUTES", 5))
HTTP_TIMEOUT_SECONDS = float(os.environ.get("HTTP_TIMEOUT_SECONDS", 10))

# ── Domain limits ────────────────────────────────────────────
MAX_COMPANIES = 16
MAX_COMPANY_ID = 30
MAX_LOT_LINES = 12
MAX_SUB_CRITERIA = 20
MAX_VERSIONS = 3          # V0 + 2 negotiation rounds
WEIGHTING_TOTAL = 100
CRITERION_WEIGHT_STEP = 0.5
DEFAULT_TOLERANCE_PCT = 20

# Line id used for the "base" price entry of a company
BASE_LINE_ID = 0

# ── Deviation bands (fractions of the estimation) ────────────
DEVIATION_LOW_MAX = 0.10
DEVIATION_MEDIUM_MAX = 0.20
