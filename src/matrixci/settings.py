from __future__ import annotations
import os

WORK_DIR = os.environ.get("MATRIXCI_WORK_DIR", ".matrixci/work")
MAX_WORKERS = int(os.environ["MATRIXCI_MAX_WORKERS"]) if os.environ.get("MATRIXCI_MAX_WORKERS") else None
# Extra runs-on labels served by this host, comma separated (e.g. "ubuntu-22.04,gpu")
PLATFORMS = [p.strip() for p in os.environ.get("MATRIXCI_PLATFORMS", "").split(",") if p.strip()]
PIPELINE = os.environ.get("MATRIXCI_PIPELINE", ".github/workflows/ci.yaml")
KEEP_WORKSPACES = os.environ.get("MATRIXCI_KEEP_WORKSPACES", "0") in ("1", "true", "yes")
# Seconds between checks of the cancellation token while a command runs
POLL_INTERVAL = float(os.environ.get("MATRIXCI_POLL_INTERVAL", "0.1"))
