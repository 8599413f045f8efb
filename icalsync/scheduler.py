from __future__ import annotations

import asyncio
import logging
import threading
from typing import Optional

from icalsync.config_manager import ConfigManager
from icalsync.models import SyncResult
from icalsync.sync_engine import SyncEngine


logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()
        self._force_refresh = False
        self.last_result: Optional[SyncResult] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="icalsync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self, force_refresh: bool = False) -> None:
        if force_refresh:
            self._force_refresh = True
        self._manual_trigger_event.set()

    def _run(self, trigger: str, force_refresh: bool = False) -> None:
        # Each run gets its own event loop on this thread.
        self.last_result = asyncio.run(self.sync_engine.run_once(trigger=trigger, force_refresh=force_refresh))
        logger.debug("Scheduler %s run finished with status %s", trigger, self.last_result.status)

    def _loop(self) -> None:
        self._run("startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(60, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            if manual:
                force_refresh, self._force_refresh = self._force_refresh, False
                self._run("manual", force_refresh=force_refresh)
            else:
                self._run("scheduled")
