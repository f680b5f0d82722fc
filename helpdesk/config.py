"""Configuration for the incident routing engine, API and arq worker."""

import os

REDIS_URL: str = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
REDIS_CONN_TIMEOUT: int = int(os.environ.get("REDIS_CONN_TIMEOUT", "5"))
# "memory" keeps everything in-process (single instance, tests); "redis" shares state between API and worker.
STORE_BACKEND: str = os.environ.get("STORE_BACKEND", "memory").strip().lower()

# Optional: Slack or Discord webhook URL; if set, every incident event triggers a POST.
WEBHOOK_URL: str = os.environ.get("WEBHOOK_URL", "")
ACTIVITY_MAX_EVENTS: int = int(os.environ.get("ACTIVITY_MAX_EVENTS", "200"))

CORS_ORIGINS: list[str] = [
    o.strip()
    for o in os.environ.get("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
    if o.strip()
]

# --- Assignment engine ---
# Ceiling on incidents in Open / Hold / In-Progress per technician.
MAX_ACTIVE_INCIDENTS: int = int(os.environ.get("MAX_ACTIVE_INCIDENTS", "3"))
PENDING_SWEEP_INTERVAL_SECONDS: int = int(os.environ.get("PENDING_SWEEP_INTERVAL_SECONDS", "30"))
