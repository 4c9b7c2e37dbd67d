import os

# Charger simulation
TELEMETRY_INTERVAL_SEC = float(os.getenv("TELEMETRY_INTERVAL_SEC", "10"))
IDLE_TIMEOUT_SEC = float(os.getenv("IDLE_TIMEOUT_SEC", "20"))
IDLE_CURRENT_THRESHOLD_A = float(os.getenv("IDLE_CURRENT_THRESHOLD_A", "0.5"))
IDLE_POWER_THRESHOLD_KW = float(os.getenv("IDLE_POWER_THRESHOLD_KW", "0.1"))
RATE_PER_KWH = float(os.getenv("RATE_PER_KWH", "12"))         # Rs. per kWh

# Fleet supervision
GRID_LIMIT_KW = float(os.getenv("GRID_LIMIT_KW", "10"))
HEARTBEAT_TIMEOUT_SEC = float(os.getenv("HEARTBEAT_TIMEOUT_SEC", "30"))
HEARTBEAT_CHECK_SEC = float(os.getenv("HEARTBEAT_CHECK_SEC", "5"))

# Session ledger
LEDGER_PATH = os.getenv("LEDGER_PATH", "ev-sim.db")

# Transport
HTTP_HOST = os.getenv("HTTP_HOST", "0.0.0.0")
HTTP_PORT = int(os.getenv("HTTP_PORT", "3000"))
API_BASE = os.getenv("API_BASE", "http://127.0.0.1:3000")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
