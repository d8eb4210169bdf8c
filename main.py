"""Process entry point: ``uvicorn main:app``.

Wires the embedded SQLite store, the OpenStackControlPlane controller and the
introspection API together from CPR_* settings.
"""

from __future__ import annotations

import logging

from cpr.api import create_app
from cpr.controlplane import build_controller
from cpr.db import SqliteStore
from cpr.settings import settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

store = SqliteStore(settings.db_path)
controller = build_controller(store)
app = create_app(store, controller)
