import tempfile
import unittest
from pathlib import Path

from icalsync.models import SyncResult
from icalsync.node_store import LocationExistsError, NodeNotFoundError, SqliteNodeStore, generate_uid
from icalsync.records import RecordBlock


def _record(identity: str, title: str) -> RecordBlock:
    return RecordBlock(text=title, children=[RecordBlock(text=f"ical-id:: {identity}")])


class SqliteNodeStoreTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = SqliteNodeStore(str(Path(self.temp_dir.name) / "nested" / "store.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_generate_uid_shape(self) -> None:
        self.assertRegex(generate_uid(), r"^[0-9a-z]{9}$")

    async def test_create_and_find_location(self) -> None:
        location_id = await self.store.create_location("ical/work/abc", [_record("a", "Standup")])
        self.assertEqual(await self.store.get_location_id("ical/work/abc"), location_id)
        self.assertIsNone(await self.store.get_location_id("ical/work/missing"))

        children = await self.store.get_children(location_id)
        self.assertEqual([child.text for child in children], ["Standup"])
        self.assertEqual([child.text for child in children[0].children], ["ical-id:: a"])

    async def test_duplicate_location_raises(self) -> None:
        await self.store.create_location("ical/work/abc")
        with self.assertRaises(LocationExistsError):
            await self.store.create_location("ical/work/abc")

    async def test_list_locations_with_prefix(self) -> None:
        for path in ["ical/work/a", "ical/home/b", "icalendar/x", "other/ical/c"]:
            await self.store.create_location(path)
        self.assertEqual(await self.store.list_locations_with_prefix("ical/"), ["ical/home/b", "ical/work/a"])

    async def test_create_node_order(self) -> None:
        location_id = await self.store.create_location("ical/work/abc")
        await self.store.create_node(location_id, "last", RecordBlock(text="second"))
        await self.store.create_node(location_id, "last", RecordBlock(text="third"))
        await self.store.create_node(location_id, 0, RecordBlock(text="first"))
        children = await self.store.get_children(location_id)
        self.assertEqual([child.text for child in children], ["first", "second", "third"])

    async def test_create_node_missing_parent(self) -> None:
        with self.assertRaises(NodeNotFoundError):
            await self.store.create_node("nope", "last", RecordBlock(text="orphan"))

    async def test_update_node(self) -> None:
        location_id = await self.store.create_location("ical/work/abc")
        node_id = await self.store.create_node(location_id, "last", _record("a", "Standup"))
        await self.store.update_node(node_id, "Standup (moved)")
        children = await self.store.get_children(location_id)
        self.assertEqual(children[0].text, "Standup (moved)")
        with self.assertRaises(NodeNotFoundError):
            await self.store.update_node("missing", "text")

    async def test_delete_node_removes_subtree(self) -> None:
        location_id = await self.store.create_location("ical/work/abc")
        node_id = await self.store.create_node(location_id, "last", _record("a", "Standup"))
        child_id = (await self.store.get_children(location_id))[0].children[0].id
        await self.store.delete_node(node_id)
        self.assertEqual(await self.store.get_children(location_id), [])
        with self.assertRaises(NodeNotFoundError):
            await self.store.delete_node(child_id)

    def test_sync_run_history(self) -> None:
        run_id = self.store.start_sync_run(trigger="manual")
        running = self.store.recent_sync_runs(limit=5)[0]
        self.assertEqual(running["status"], "running")

        result = SyncResult(status="success", message="Synced 1 event(s) from 1 calendar(s).", duration_ms=12, trigger="manual", events_synced=1, created=1, properties_changed=2)
        self.store.finish_sync_run(run_id=run_id, result=result)
        finished = self.store.recent_sync_runs(limit=5)[0]
        self.assertEqual(finished["id"], run_id)
        self.assertEqual(finished["status"], "success")
        self.assertEqual(finished["created"], 1)
        self.assertEqual(finished["properties_changed"], 2)
        self.assertEqual(finished["trigger"], "manual")


if __name__ == "__main__":
    unittest.main()
