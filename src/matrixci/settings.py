from __future__ import annotations
import os

MAX_WORKERS = int(os.environ["MATRIXCI_MAX_WORKERS"]) if os.environ.get("MATRIXCI_MAX_WORKERS") else None
UPLOAD_URL = os.environ.get("MATRIXCI_UPLOAD_URL") or None
COVERAGE_DIR = os.environ.get("MATRIXCI_COVERAGE_DIR", ".matrixci/coverage")
OUTPUT_TAIL = int(os.environ.get("MATRIXCI_OUTPUT_TAIL", "4000"))


def default_workers() -> int:
    if MAX_WORKERS:
        return max(1, MAX_WORKERS)
    c = os.cpu_count() or 2
    return max(1, c - 1)
