"""Reconcile desired event records against what a store location holds.

A record's only durable link to its event is the ``ical-id`` property. The
root text is free to change between runs and is never used for matching.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from icalsync.batching import delay_ms, maybe_yield
from icalsync.models import NormalizedEvent
from icalsync.node_store import LocationExistsError, NodeNotFoundError, NodeStore, StoreNode
from icalsync.records import RecordBlock, extract_ical_id_from_node, extract_property_key


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MUTATION_DELAY_MS = 100
DEFAULT_MAX_RETRIES = 5
RETRY_BASE_MS = 100


@dataclass
class DesiredRecord:
    event: NormalizedEvent
    calendar_name: str
    location: str
    block: RecordBlock

    @property
    def identity(self) -> str:
        return self.event.identity


@dataclass
class ReconcileOutcome:
    location: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    children_created: int = 0
    children_updated: int = 0
    duplicates: int = 0

    @property
    def mutations(self) -> int:
        return self.created + self.updated + self.deleted + self.children_created + self.children_updated


@dataclass
class SweepOutcome:
    deleted: int = 0
    emptied_locations: list[str] = field(default_factory=list)
    failed_locations: list[str] = field(default_factory=list)


@dataclass
class SyncSession:
    """Run-scoped state. A fresh instance is created for every sync run."""

    location_ids: dict[str, str] = field(default_factory=dict)
    processed: dict[str, set[str]] = field(default_factory=dict)

    def processed_for(self, location: str) -> set[str]:
        return self.processed.setdefault(location, set())


class Reconciler:
    def __init__(
        self,
        store: NodeStore,
        session: Optional[SyncSession] = None,
        mutation_delay_ms: int = DEFAULT_MUTATION_DELAY_MS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_ms: int = RETRY_BASE_MS,
    ) -> None:
        self.store = store
        self.session = session if session is not None else SyncSession()
        self.mutation_delay_ms = max(0, int(mutation_delay_ms))
        self.max_retries = max(0, int(max_retries))
        # Retries always wait, even when mutation pacing is switched off.
        self.retry_base_ms = max(1, int(retry_base_ms))
        self._mutation_count = 0

    async def _backoff(self, attempt: int) -> None:
        await asyncio.sleep(self.retry_base_ms * (2**attempt) / 1000)

    async def _with_retry(self, description: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run a store mutation, retrying while its target is not visible yet."""
        attempt = 0
        while True:
            try:
                result = await operation()
            except NodeNotFoundError:
                if attempt >= self.max_retries:
                    raise
                logger.debug("%s: target not found, retry %s/%s", description, attempt + 1, self.max_retries)
                await self._backoff(attempt)
                attempt += 1
                continue
            await delay_ms(self.mutation_delay_ms)
            self._mutation_count += 1
            await maybe_yield(self._mutation_count)
            return result

    async def _find_location_with_retry(self, path: str) -> Optional[str]:
        for attempt in range(self.max_retries + 1):
            location_id = await self.store.get_location_id(path)
            if location_id:
                return location_id
            if attempt < self.max_retries:
                await self._backoff(attempt)
        return None

    async def resolve_location_id(self, path: str) -> Optional[str]:
        cached = self.session.location_ids.get(path)
        if cached:
            return cached
        location_id = await self.store.get_location_id(path)
        if location_id:
            self.session.location_ids[path] = location_id
        return location_id

    async def ensure_location(self, path: str) -> str:
        location_id = await self.resolve_location_id(path)
        if location_id:
            return location_id
        try:
            location_id = await self.store.create_location(path)
        except LocationExistsError:
            logger.info("Location %r already exists, looking up its id", path)
            location_id = await self._find_location_with_retry(path)
            if not location_id:
                logger.debug("Location %r still not visible after %s retries", path, self.max_retries)
                raise
        else:
            logger.debug("Created location %r (%s)", path, location_id)
        self.session.location_ids[path] = location_id
        return location_id

    async def _delete(self, node: StoreNode, outcome: ReconcileOutcome) -> None:
        await self._with_retry(f"delete {node.id}", lambda: self.store.delete_node(node.id))
        outcome.deleted += 1

    async def sync_children(self, parent: StoreNode, desired_children: list[RecordBlock], outcome: ReconcileOutcome) -> None:
        # Properties missing from the desired block are left in place.
        existing_by_key: dict[str, StoreNode] = {}
        for child in parent.children:
            key = extract_property_key(child.text)
            if key:
                existing_by_key.setdefault(key, child)

        for desired in desired_children:
            key = extract_property_key(desired.text)
            if not key:
                continue
            existing = existing_by_key.pop(key, None)
            if existing is None:
                await self._with_retry(
                    f"create property {key} under {parent.id}",
                    lambda: self.store.create_node(parent.id, "last", desired),
                )
                outcome.children_created += 1
            elif existing.text != desired.text:
                await self._with_retry(
                    f"update property {existing.id}",
                    lambda: self.store.update_node(existing.id, desired.text),
                )
                outcome.children_updated += 1

    async def reconcile_location(self, location: str, desired: list[DesiredRecord]) -> ReconcileOutcome:
        """Bring one location in line with ``desired`` (already sorted).

        The first record per identity wins; identities already handled for
        this location earlier in the session count as duplicates.
        """
        outcome = ReconcileOutcome(location=location)
        location_id = await self.ensure_location(location)
        existing_nodes = await self.store.get_children(location_id)

        existing_by_id: dict[str, StoreNode] = {}
        stale: list[StoreNode] = []
        for node in existing_nodes:
            ical_id = extract_ical_id_from_node(node.text, node.children)
            if not ical_id or ical_id in existing_by_id:
                stale.append(node)
                continue
            existing_by_id[ical_id] = node

        seen = self.session.processed_for(location)
        for record in desired:
            if record.identity in seen:
                outcome.duplicates += 1
                logger.debug("Skipping duplicate ical-id %r on %r", record.identity, location)
                continue
            seen.add(record.identity)

            existing = existing_by_id.get(record.identity)
            if existing is None:
                logger.debug("Creating record %r on %r", record.identity, location)
                await self._with_retry(
                    f"create record {record.identity}",
                    lambda: self.store.create_node(location_id, "last", record.block),
                )
                outcome.created += 1
                continue
            if existing.text != record.block.text:
                logger.debug("Updating record %r (%s)", record.identity, existing.id)
                await self._with_retry(
                    f"update record {existing.id}",
                    lambda: self.store.update_node(existing.id, record.block.text),
                )
                outcome.updated += 1
            await self.sync_children(existing, record.block.children, outcome)

        stale.extend(node for ical_id, node in existing_by_id.items() if ical_id not in seen)
        for node in stale:
            await self._delete(node, outcome)
        return outcome

    async def clear_location(self, location: str) -> ReconcileOutcome:
        outcome = ReconcileOutcome(location=location)
        location_id = await self.resolve_location_id(location)
        if not location_id:
            return outcome
        for node in await self.store.get_children(location_id):
            await self._delete(node, outcome)
        return outcome

    async def sweep_stale_locations(self, prefix: str, desired_locations: set[str]) -> SweepOutcome:
        """Empty every location under ``prefix`` that this run did not produce."""
        sweep = SweepOutcome()
        for location in await self.store.list_locations_with_prefix(f"{prefix.rstrip('/')}/"):
            if location in desired_locations:
                continue
            try:
                outcome = await self.clear_location(location)
            except Exception:
                logger.exception("Failed to clear stale location %r", location)
                sweep.failed_locations.append(location)
                continue
            sweep.deleted += outcome.deleted
            if outcome.deleted:
                sweep.emptied_locations.append(location)
                logger.debug("Location %r is now empty (%s records removed)", location, outcome.deleted)
        return sweep
