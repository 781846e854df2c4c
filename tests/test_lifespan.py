"""
tests/test_lifespan.py -- Startup and shutdown of the API lifespan.

Covers:
  - shutdown waits for a sweep already running in a worker thread before
    the store's engine is disposed
"""

from __future__ import annotations

import asyncio
import threading
from types import SimpleNamespace

import api.main as api_main
from core.config import Settings
from inventory.store import InventoryStore


def test_shutdown_waits_for_in_flight_sweep(monkeypatch):
    events: list[str] = []
    started = threading.Event()
    release = threading.Event()

    def slow_sweep(store):
        started.set()
        release.wait(timeout=5)
        events.append("sweep finished")
        return 0

    class RecordingStore(InventoryStore):
        def close(self) -> None:
            events.append("store closed")
            super().close()

    settings = Settings(_env_file=None, database_url="sqlite:///:memory:", sweep_on_startup=True)
    monkeypatch.setattr(api_main, "get_settings", lambda: settings)
    monkeypatch.setattr(api_main, "InventoryStore", RecordingStore)
    monkeypatch.setattr(api_main, "run_sweep", slow_sweep)

    async def start_then_stop():
        app = SimpleNamespace(state=SimpleNamespace())
        async with api_main.lifespan(app):
            await asyncio.to_thread(started.wait, 5)
            # Let the sweep finish only after shutdown has cancelled the task.
            threading.Timer(0.2, release.set).start()
        return app

    app = asyncio.run(start_then_stop())
    assert events == ["sweep finished", "store closed"]
    assert app.state.sweep_task.cancelled()
