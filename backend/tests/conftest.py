"""Shared test environment: isolated SQLite store, no auth, no live feed."""
from __future__ import annotations

import os
import sys
from pathlib import Path


TMP = Path(__file__).resolve().parent / ".tmp_dispatch"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["DISPATCH_DB_PATH"] = str(TMP / "dispatch.db")
os.environ["AUTH_ENABLED"] = "false"
os.environ["DEFAULT_TENANT_ID"] = "demo"
os.environ["TRIP_STATUS_FEED_URL"] = ""
os.environ["TRIP_STATUS_FEED_TOKEN"] = ""

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
