from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Optional

from icalsync.batching import BatchRunner, ProgressCallback, sort_events_by_date_descending
from icalsync.config_manager import ConfigManager
from icalsync.feed_client import FeedClient, env_proxy_url
from icalsync.filters import filter_events_by_date_window, filter_excluded_events
from icalsync.log import configure_logging
from icalsync.models import AppConfig, FeedCalendar, SyncResult, resolve_timezone
from icalsync.naming import resolve_target_location
from icalsync.node_store import SqliteNodeStore
from icalsync.reconciler import DesiredRecord, Reconciler, SyncSession
from icalsync.records import build_event_record


logger = logging.getLogger(__name__)


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


def group_by_location(records: list[DesiredRecord]) -> dict[str, list[DesiredRecord]]:
    grouped: dict[str, list[DesiredRecord]] = {}
    for record in records:
        grouped.setdefault(record.location, []).append(record)
    return grouped


def build_desired_records(calendars: list[FeedCalendar], config: AppConfig) -> list[DesiredRecord]:
    records = [
        DesiredRecord(
            event=event,
            calendar_name=calendar.name,
            location=resolve_target_location(event, calendar.name, config.output.page_prefix),
            block=build_event_record(event, calendar.name, config.output.title_prefix),
        )
        for calendar in calendars
        for event in calendar.events
    ]
    return sort_events_by_date_descending(records, key=lambda record: record.event)


class SyncEngine:
    """Runs one feed-to-store sync at a time.

    The feed cache lives as long as the engine; everything else is scoped
    to a single run through :class:`SyncSession`.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        store: SqliteNodeStore,
        feed_client: Optional[FeedClient] = None,
    ) -> None:
        self.config_manager = config_manager
        self.store = store
        self.feed_client = feed_client or FeedClient(proxy_url_provider=self._proxy_url)
        self._config: Optional[AppConfig] = None
        self._guard = threading.Lock()
        self._in_progress = False

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def _proxy_url(self) -> Optional[str]:
        configured = self._config.network.proxy_url if self._config is not None else ""
        return configured or env_proxy_url()

    def _acquire(self) -> bool:
        with self._guard:
            if self._in_progress:
                return False
            self._in_progress = True
            return True

    def _release(self) -> None:
        with self._guard:
            self._in_progress = False

    async def _filter_calendars(self, calendars: list[FeedCalendar], config: AppConfig) -> list[FeedCalendar]:
        patterns = config.filters.compiled()
        tz = resolve_timezone(config.sync.timezone)
        filtered: list[FeedCalendar] = []
        for calendar in calendars:
            events = await filter_excluded_events(calendar.events, patterns)
            events = await filter_events_by_date_window(
                events, config.sync.days_past, config.sync.days_future, tz=tz
            )
            filtered.append(
                FeedCalendar(
                    source=calendar.source,
                    name=calendar.name,
                    events=events,
                    changed=calendar.changed,
                    cached=calendar.cached,
                )
            )
        return filtered

    async def run_once(
        self,
        trigger: str = "manual",
        force_refresh: bool = False,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        if not self._acquire():
            logger.info("Sync already in progress, rejecting %s trigger", trigger)
            return SyncResult(
                status="busy",
                message="Sync is already in progress.",
                duration_ms=0,
                trigger=trigger,
            )

        run_id: Optional[int] = None
        result = SyncResult(status="running", message="", duration_ms=0, trigger=trigger)
        try:
            config = self.config_manager.load()
            self._config = config
            configure_logging(config.logging.debug)
            run_id = self.store.start_sync_run(trigger=trigger)

            if not config.calendars:
                result.status = "skipped"
                result.message = "No calendars configured. Add calendar URLs to the config. Sync skipped."
                return result

            logger.debug(
                "Sync start (%s): calendars=%s days_past=%s days_future=%s",
                trigger,
                [source.display_name for source in config.calendars],
                config.sync.days_past,
                config.sync.days_future,
            )
            self.feed_client.timeout_seconds = config.network.timeout_seconds
            self.feed_client.tz = resolve_timezone(config.sync.timezone)
            if force_refresh:
                self.feed_client.cache.clear()

            raw_calendars, fetch_stats = await self.feed_client.fetch_all(config.calendars, force_refresh=force_refresh)
            result.failed_sources = fetch_stats.failed
            result.calendars_loaded = len(raw_calendars)
            if not raw_calendars:
                result.status = "warning"
                result.message = "No calendars could be loaded. Check your URLs."
                return result

            calendars = await self._filter_calendars(raw_calendars, config)
            desired = build_desired_records(calendars, config)
            result.events_synced = len(desired)

            session = SyncSession()
            reconciler = Reconciler(
                self.store,
                session=session,
                mutation_delay_ms=config.sync.mutation_delay_ms,
            )

            async def reconcile_batch(batch: list[DesiredRecord]) -> None:
                for location, records in group_by_location(batch).items():
                    try:
                        outcome = await reconciler.reconcile_location(location, records)
                    except Exception:
                        result.failed_locations += 1
                        logger.exception("Reconciliation failed for %r", location)
                        continue
                    result.created += outcome.created
                    result.updated += outcome.updated
                    result.properties_changed += outcome.children_created + outcome.children_updated
                    result.deleted += outcome.deleted
                    result.duplicates += outcome.duplicates

            runner = BatchRunner(config.sync.batch_size, config.sync.batch_delay_ms, on_progress=on_progress)
            await runner.run(desired, reconcile_batch)

            desired_locations = {record.location for record in desired}
            sweep = await reconciler.sweep_stale_locations(config.output.page_prefix, desired_locations)
            result.deleted += sweep.deleted
            result.emptied_locations = len(sweep.emptied_locations)
            result.failed_locations += len(sweep.failed_locations)

            result.status = "success"
            result.message = f"Synced {result.events_synced} event(s) from {len(calendars)} calendar(s)."
            if result.failed_sources or result.failed_locations:
                result.message += (
                    f" {result.failed_sources} calendar(s) and {result.failed_locations} location(s) failed."
                )
            logger.info("Sync completed (%s): %s", trigger, result.message)
            return result
        except Exception as exc:
            result.status = "error"
            result.message = f"Failed to sync calendars: {exc}"
            logger.exception("Failed to sync calendars")
            return result
        finally:
            result.duration_ms = _elapsed_ms(started_at)
            if run_id is not None:
                try:
                    self.store.finish_sync_run(run_id=run_id, result=result)
                except Exception:
                    logger.exception("Failed to record sync run %s", run_id)
            self._release()
