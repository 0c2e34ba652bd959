import unittest

from chatstore.documents import InMemoryDocumentStore
from chatstore.errors import NotFound
from chatstore.records import SERVER_TIMESTAMP


class FakeClock:
    def __init__(self, start_ms: int = 1_000) -> None:
        self.now_ms = start_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms

    def now(self) -> int:
        return self.now_ms


class InMemoryDocumentStoreTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.store = InMemoryDocumentStore(now_func=self.clock.now)

    async def test_set_resolves_server_timestamps_recursively(self):
        await self.store.set(
            "chats",
            "u1_u2",
            {"updatedAt": SERVER_TIMESTAMP, "lastMessage": {"text": "hi", "timestamp": SERVER_TIMESTAMP}},
        )

        data = await self.store.get("chats", "u1_u2")
        self.assertEqual(data["updatedAt"], 1_000)
        self.assertEqual(data["lastMessage"], {"text": "hi", "timestamp": 1_000})

    async def test_merge_set_keeps_existing_fields(self):
        await self.store.set("users", "u1", {"uid": "u1", "createdAt": 5, "prefs": {"a": 1}})
        await self.store.set("users", "u1", {"displayName": "Ann", "prefs": {"b": 2}}, merge=True)

        data = await self.store.get("users", "u1")
        self.assertEqual(data, {"uid": "u1", "createdAt": 5, "displayName": "Ann", "prefs": {"a": 1, "b": 2}})

    async def test_plain_set_replaces_document(self):
        await self.store.set("users", "u1", {"uid": "u1", "createdAt": 5})
        await self.store.set("users", "u1", {"uid": "u1"})

        self.assertEqual(await self.store.get("users", "u1"), {"uid": "u1"})

    async def test_update_requires_existing_document(self):
        with self.assertRaises(NotFound):
            await self.store.update("chats", "missing", {"updatedAt": SERVER_TIMESTAMP})

    async def test_update_replaces_top_level_fields(self):
        await self.store.set("chats", "u1_u2", {"lastMessage": {"text": "a", "senderId": "u1"}, "createdAt": 1})
        self.clock.advance(10)
        await self.store.update("chats", "u1_u2", {"lastMessage": {"text": "b"}, "updatedAt": SERVER_TIMESTAMP})

        data = await self.store.get("chats", "u1_u2")
        self.assertEqual(data["lastMessage"], {"text": "b"})
        self.assertEqual(data["createdAt"], 1)
        self.assertEqual(data["updatedAt"], 1_010)

    async def test_get_returns_copy(self):
        await self.store.set("users", "u1", {"providers": ["google"]})
        data = await self.store.get("users", "u1")
        data["providers"].append("phone")

        self.assertEqual((await self.store.get("users", "u1"))["providers"], ["google"])

    async def test_watch_delivers_current_snapshot_then_changes(self):
        await self.store.set("users", "b", {"uid": "b"})
        snapshots = []

        subscription = self.store.watch("users", snapshots.append)
        await self.store.set("users", "a", {"uid": "a"})
        await self.store.delete("users", "b")
        subscription.cancel()
        await self.store.set("users", "c", {"uid": "c"})

        self.assertEqual(
            [[doc.doc_id for doc in snapshot] for snapshot in snapshots],
            [["b"], ["a", "b"], ["a"]],
        )

    async def test_delete_missing_document_is_false(self):
        self.assertFalse(await self.store.delete("users", "nobody"))

    async def test_query_matches_field_value(self):
        await self.store.set("users", "u1", {"phoneNumber": "+1555"})
        await self.store.set("users", "u2", {"phoneNumber": "+1666"})

        matches = await self.store.query("users", "phoneNumber", "+1666")
        self.assertEqual([doc.doc_id for doc in matches], ["u2"])

    async def test_fail_watchers_reports_error_to_listener(self):
        errors = []
        self.store.watch("users", lambda docs: None, errors.append)

        self.store.fail_watchers("users", RuntimeError("permission denied"))

        self.assertEqual(len(errors), 1)
        self.assertFalse(self.store.hub.has_listeners("doc:users"))


if __name__ == "__main__":
    unittest.main()
