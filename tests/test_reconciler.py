import copy
import unittest
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest import mock

from icalsync.models import NormalizedEvent
from icalsync.naming import resolve_target_location
from icalsync.node_store import LocationExistsError, NodeNotFoundError, StoreNode
from icalsync.reconciler import DesiredRecord, Reconciler, SyncSession
from icalsync.records import RecordBlock, build_event_record


TODAY = datetime(2024, 5, 15, 9, 0, tzinfo=timezone.utc)


class FakeNodeStore:
    """In-memory store that records every mutation."""

    def __init__(self) -> None:
        self.locations: dict[str, str] = {}
        self.roots: dict[str, StoreNode] = {}
        self.parents: dict[str, StoreNode] = {}
        self.mutations: list[tuple[str, str]] = []
        self.location_lookups = 0
        self.hidden_lookups = 0
        self.create_failures = 0
        self._next_id = 0

    def _new_id(self) -> str:
        self._next_id += 1
        return f"n{self._next_id}"

    def _build(self, block: RecordBlock) -> StoreNode:
        node = StoreNode(id=self._new_id(), text=block.text)
        for child in block.children:
            child_node = self._build(child)
            self.parents[child_node.id] = node
            node.children.append(child_node)
        return node

    def _find(self, node_id: str) -> Optional[StoreNode]:
        if node_id in self.roots:
            return self.roots[node_id]
        for parent in list(self.roots.values()) + list(self.parents.values()):
            for child in parent.children:
                if child.id == node_id:
                    return child
        return None

    def seed(self, path: str, blocks: list[RecordBlock]) -> str:
        location_id = self._new_id()
        root = StoreNode(id=location_id, text=path)
        self.locations[path] = location_id
        self.roots[location_id] = root
        for block in blocks:
            node = self._build(block)
            self.parents[node.id] = root
            root.children.append(node)
        return location_id

    def records(self, path: str) -> list[StoreNode]:
        return self.roots[self.locations[path]].children

    async def get_children(self, location_id: str) -> list[StoreNode]:
        return copy.deepcopy(self.roots[location_id].children)

    async def get_location_id(self, path: str) -> Optional[str]:
        self.location_lookups += 1
        if self.hidden_lookups:
            self.hidden_lookups -= 1
            return None
        return self.locations.get(path)

    async def list_locations_with_prefix(self, prefix: str) -> list[str]:
        return sorted(path for path in self.locations if path.startswith(prefix))

    async def create_location(self, path: str, initial_tree=None) -> str:
        if path in self.locations:
            raise LocationExistsError(path)
        self.mutations.append(("create_location", path))
        return self.seed(path, list(initial_tree or []))

    async def create_node(self, parent_id: str, order, block: RecordBlock) -> str:
        if self.create_failures:
            self.create_failures -= 1
            raise NodeNotFoundError(parent_id)
        parent = self._find(parent_id)
        if parent is None:
            raise NodeNotFoundError(parent_id)
        node = self._build(block)
        self.parents[node.id] = parent
        parent.children.append(node)
        self.mutations.append(("create", block.text))
        return node.id

    async def update_node(self, node_id: str, text: str) -> None:
        node = self._find(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        node.text = text
        self.mutations.append(("update", text))

    async def delete_node(self, node_id: str) -> None:
        node = self._find(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        parent = self.parents.pop(node_id)
        parent.children = [child for child in parent.children if child.id != node_id]
        self.mutations.append(("delete", node.text))


def _desired(event: NormalizedEvent, calendar: str = "Work") -> DesiredRecord:
    return DesiredRecord(
        event=event,
        calendar_name=calendar,
        location=resolve_target_location(event, calendar, "ical"),
        block=build_event_record(event, calendar, "#gcal"),
    )


class ReconcilerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = FakeNodeStore()

    def _reconciler(self, session: Optional[SyncSession] = None) -> Reconciler:
        return Reconciler(self.store, session=session, mutation_delay_ms=0, retry_base_ms=1)

    async def test_creates_location_and_record(self) -> None:
        record = _desired(NormalizedEvent(identity="a", title="Standup", start=TODAY))
        outcome = await self._reconciler().reconcile_location(record.location, [record])

        self.assertEqual(outcome.created, 1)
        self.assertEqual(self.store.mutations[0], ("create_location", record.location))
        stored = self.store.records(record.location)
        self.assertEqual(len(stored), 1)
        self.assertEqual(stored[0].text, "#gcal [[May 15th, 2024]] Standup #work")
        self.assertIn("ical-id:: a", [child.text for child in stored[0].children])

    async def test_second_identical_run_is_idempotent(self) -> None:
        record = _desired(NormalizedEvent(identity="a", title="Standup", description="Daily", start=TODAY))
        await self._reconciler().reconcile_location(record.location, [record])
        before = list(self.store.mutations)

        outcome = await self._reconciler().reconcile_location(record.location, [record])

        self.assertEqual(outcome.mutations, 0)
        self.assertEqual(self.store.mutations, before)

    async def test_title_change_issues_single_root_update(self) -> None:
        original = _desired(NormalizedEvent(identity="a", title="Standup", start=TODAY))
        await self._reconciler().reconcile_location(original.location, [original])
        before = len(self.store.mutations)

        moved = _desired(NormalizedEvent(identity="a", title="Standup (moved)", start=TODAY))
        outcome = await self._reconciler().reconcile_location(moved.location, [moved])

        self.assertEqual((outcome.created, outcome.updated, outcome.deleted), (0, 1, 0))
        self.assertEqual(self.store.mutations[before:], [("update", moved.block.text)])

    async def test_duplicates_keep_first_occurrence(self) -> None:
        records = [
            _desired(NormalizedEvent(identity="series", title="Weekly (latest)", start=TODAY)),
            _desired(NormalizedEvent(identity="series", title="Weekly (older)", start=TODAY - timedelta(days=7))),
            _desired(NormalizedEvent(identity="series", title="Weekly (oldest)", start=TODAY - timedelta(days=14))),
        ]
        outcome = await self._reconciler().reconcile_location(records[0].location, records)

        self.assertEqual(outcome.created, 1)
        self.assertEqual(outcome.duplicates, 2)
        stored = self.store.records(records[0].location)
        self.assertEqual([node.text for node in stored], [records[0].block.text])

    async def test_duplicates_across_batches_share_session(self) -> None:
        session = SyncSession()
        latest = _desired(NormalizedEvent(identity="series", title="Weekly (latest)", start=TODAY))
        older = _desired(NormalizedEvent(identity="series", title="Weekly (older)", start=TODAY - timedelta(days=7)))

        reconciler = Reconciler(self.store, session=session, mutation_delay_ms=0)
        await reconciler.reconcile_location(latest.location, [latest])
        outcome = await reconciler.reconcile_location(older.location, [older])

        self.assertEqual(outcome.duplicates, 1)
        self.assertEqual(outcome.mutations, 0)
        self.assertEqual([node.text for node in self.store.records(latest.location)], [latest.block.text])

    async def test_stale_and_idless_records_are_deleted(self) -> None:
        keep = _desired(NormalizedEvent(identity="a", title="Standup", start=TODAY))
        self.store.seed(
            keep.location,
            [
                RecordBlock(text="a note without an id"),
                keep.block,
                RecordBlock(text="copy of a", children=[RecordBlock(text="ical-id:: a")]),
                RecordBlock(text="cancelled", children=[RecordBlock(text="ical-id:: gone")]),
            ],
        )

        outcome = await self._reconciler().reconcile_location(keep.location, [keep])

        self.assertEqual((outcome.created, outcome.updated, outcome.deleted), (0, 0, 3))
        self.assertEqual([node.text for node in self.store.records(keep.location)], [keep.block.text])

    async def test_children_created_and_updated_but_never_removed(self) -> None:
        first = _desired(NormalizedEvent(identity="a", title="Standup", location="Room 4", start=TODAY))
        await self._reconciler().reconcile_location(first.location, [first])

        second = _desired(NormalizedEvent(identity="a", title="Standup", description="New agenda", start=TODAY))
        outcome = await self._reconciler().reconcile_location(second.location, [second])

        self.assertEqual(outcome.children_created, 1)
        self.assertEqual(outcome.children_updated, 0)
        child_texts = [child.text for child in self.store.records(first.location)[0].children]
        self.assertIn("ical-desc:: New agenda", child_texts)
        self.assertIn("ical-location:: Room 4", child_texts)

        third = _desired(NormalizedEvent(identity="a", title="Standup", description="Changed", start=TODAY))
        outcome = await self._reconciler().reconcile_location(third.location, [third])
        self.assertEqual(outcome.children_updated, 1)

    async def test_create_retries_until_parent_visible(self) -> None:
        record = _desired(NormalizedEvent(identity="a", title="Standup", start=TODAY))
        self.store.create_failures = 2
        outcome = await self._reconciler().reconcile_location(record.location, [record])
        self.assertEqual(outcome.created, 1)
        self.assertEqual(len(self.store.records(record.location)), 1)

    async def test_retry_budget_exhausted_raises(self) -> None:
        record = _desired(NormalizedEvent(identity="a", title="Standup", start=TODAY))
        self.store.create_failures = 10
        reconciler = Reconciler(self.store, mutation_delay_ms=0, max_retries=3, retry_base_ms=1)
        with self.assertRaises(NodeNotFoundError):
            await reconciler.reconcile_location(record.location, [record])
        self.assertEqual(self.store.create_failures, 6)

    async def test_retry_backoff_waits_without_mutation_delay(self) -> None:
        attempts = []

        async def operation() -> str:
            attempts.append(len(attempts))
            if len(attempts) <= 3:
                raise NodeNotFoundError("parent not visible yet")
            return "ok"

        reconciler = Reconciler(self.store, mutation_delay_ms=0, max_retries=3)
        with mock.patch("icalsync.reconciler.asyncio.sleep", new_callable=mock.AsyncMock) as sleep:
            result = await reconciler._with_retry("create", operation)

        self.assertEqual(result, "ok")
        self.assertEqual(len(attempts), 4)
        waits = [call.args[0] for call in sleep.await_args_list if call.args[0] > 0]
        self.assertEqual(waits, [0.1, 0.2, 0.4])

    async def test_location_lookup_backoff_waits_without_mutation_delay(self) -> None:
        self.store.seed("ical/work/abc", [])
        self.store.hidden_lookups = 2
        reconciler = Reconciler(self.store, mutation_delay_ms=0)
        with mock.patch("icalsync.reconciler.asyncio.sleep", new_callable=mock.AsyncMock) as sleep:
            location_id = await reconciler._find_location_with_retry("ical/work/abc")

        self.assertIsNotNone(location_id)
        self.assertEqual([call.args[0] for call in sleep.await_args_list], [0.1, 0.2])

    async def test_ensure_location_handles_create_race(self) -> None:
        location_id = self.store.seed("ical/work/abc", [])
        self.store.hidden_lookups = 1
        with self.assertLogs("icalsync.reconciler", level="INFO"):
            resolved = await self._reconciler().ensure_location("ical/work/abc")
        self.assertEqual(resolved, location_id)

    async def test_location_ids_cached_for_session(self) -> None:
        self.store.seed("ical/work/abc", [])
        session = SyncSession()
        reconciler = Reconciler(self.store, session=session, mutation_delay_ms=0)
        await reconciler.resolve_location_id("ical/work/abc")
        await reconciler.resolve_location_id("ical/work/abc")
        self.assertEqual(self.store.location_lookups, 1)
        self.assertIn("ical/work/abc", session.location_ids)

    async def test_sweep_empties_locations_not_produced_this_run(self) -> None:
        kept = _desired(NormalizedEvent(identity="a", title="Standup", start=TODAY))
        gone = _desired(NormalizedEvent(identity="b", title="Cancelled", start=TODAY))
        self.store.seed(kept.location, [kept.block])
        self.store.seed(gone.location, [gone.block])
        self.store.seed("elsewhere/page", [RecordBlock(text="untouched")])

        sweep = await self._reconciler().sweep_stale_locations("ical", {kept.location})

        self.assertEqual(sweep.deleted, 1)
        self.assertEqual(sweep.emptied_locations, [gone.location])
        self.assertEqual(self.store.records(gone.location), [])
        self.assertEqual(len(self.store.records(kept.location)), 1)
        self.assertEqual(len(self.store.records("elsewhere/page")), 1)


if __name__ == "__main__":
    unittest.main()
