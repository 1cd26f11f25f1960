import os

TESTING = os.getenv("TESTING") == "1"
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
NAMESPACE = os.getenv("SCHEDULER_NAMESPACE", "scheduler/")

# seconds
POLL_DELAY = float(os.getenv("POLL_DELAY", "1.0"))
CAS_DELAY = float(os.getenv("CAS_DELAY", "0.5"))

API_KEY = os.getenv("API_KEY", "dev-key")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Worker / reconciler processes
WORKER_TAG = os.getenv("WORKER_TAG")
STALE_AFTER_SECONDS = float(os.getenv("STALE_AFTER_SECONDS", "300"))
RECONCILE_INTERVAL = float(os.getenv("RECONCILE_INTERVAL", "30"))
