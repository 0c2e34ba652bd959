import unittest
from unittest import mock

from chatstore.documents import InMemoryDocumentStore
from chatstore.errors import StoreError
from chatstore.records import Document

from chatlink.directory import (
    USERS_COLLECTION,
    admit_participants,
    needs_phone_verification,
    phone_number_exists,
    record_phone_link,
    remove_duplicate_profiles,
    repair_profile,
    search_participants,
    upsert_profile,
    watch_directory,
)
from chatlink.errors import SubscriptionError
from chatlink.models import Participant


def user_doc(doc_id, **data):
    return Document(collection=USERS_COLLECTION, doc_id=doc_id, data=data)


class AdmissionTests(unittest.TestCase):
    def test_admits_only_complete_reachable_records(self):
        docs = [
            user_doc("u1", uid="u1", displayName="Ann", email="ann@example.com"),
            user_doc("u2", uid="u2", displayName="Bob", phoneNumber="+1555"),
            user_doc("u3", uid="u3", displayName="", email="c@example.com"),
            user_doc("u4", uid="u4", displayName="Dee"),
            user_doc("u5", displayName="Eve", email="eve@example.com"),
            user_doc("u6", uid="u6", displayName="Fay", phone="+1666"),
        ]

        admitted = admit_participants(docs, exclude_id=None)

        self.assertEqual([p.uid for p in admitted], ["u1", "u2", "u6"])
        self.assertEqual(admitted[2].phone_number, "+1666")

    def test_excludes_self_and_duplicates(self):
        docs = [
            user_doc("a", uid="u1", displayName="Ann", email="ann@example.com"),
            user_doc("b", uid="u1", displayName="Ann Again", email="ann@example.com"),
            user_doc("c", uid="me", displayName="Me", email="me@example.com"),
        ]

        admitted = admit_participants(docs, exclude_id="me")

        self.assertEqual([(p.uid, p.display_name) for p in admitted], [("u1", "Ann")])

    def test_search_matches_name_or_email_case_insensitively(self):
        people = [
            Participant(uid="u1", display_name="Ann Lee", email="ann@example.com"),
            Participant(uid="u2", display_name="Bob", email="robert@LEEDS.org"),
            Participant(uid="u3", display_name="Cy", phone_number="+1"),
        ]

        self.assertEqual([p.uid for p in search_participants(people, "lee")], ["u1", "u2"])
        self.assertEqual([p.uid for p in search_participants(people, "  ")], ["u1", "u2", "u3"])


class WatchDirectoryTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.documents = InMemoryDocumentStore(now_func=lambda: 100)

    async def test_updates_on_every_change_without_self(self):
        views = []
        watch_directory(self.documents, views.append, exclude_id="me")

        await self.documents.set(USERS_COLLECTION, "me", {"uid": "me", "displayName": "Me", "email": "me@x.io"})
        await self.documents.set(USERS_COLLECTION, "u1", {"uid": "u1", "displayName": "Ann", "email": "a@x.io"})

        self.assertEqual([[p.uid for p in view] for view in views], [[], [], ["u1"]])

    async def test_store_failure_degrades_to_empty_directory(self):
        await self.documents.set(USERS_COLLECTION, "u1", {"uid": "u1", "displayName": "Ann", "email": "a@x.io"})
        views = []
        errors = []
        watch_directory(self.documents, views.append, exclude_id="me", on_error=errors.append)

        self.documents.fail_watchers(USERS_COLLECTION, StoreError("permission denied"))

        self.assertEqual([[p.uid for p in view] for view in views], [["u1"], []])
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], SubscriptionError)
        self.assertIsInstance(errors[0].__cause__, StoreError)

    async def test_store_failure_without_handler_is_logged(self):
        views = []
        watch_directory(self.documents, views.append, exclude_id="me")

        with self.assertLogs("chatlink.directory", level="ERROR"):
            self.documents.fail_watchers(USERS_COLLECTION, StoreError("offline"))
        self.assertEqual(views[-1], [])

    async def test_no_callback_after_cancel(self):
        callback = mock.Mock()
        subscription = watch_directory(self.documents, callback, exclude_id="me")
        callback.reset_mock()

        subscription.cancel()
        subscription.cancel()
        await self.documents.set(USERS_COLLECTION, "u1", {"uid": "u1", "displayName": "Ann", "email": "a@x.io"})

        callback.assert_not_called()
        self.assertFalse(self.documents.hub.has_listeners("doc:users"))

    async def test_late_snapshot_from_store_is_dropped_after_cancel(self):
        captured = {}

        class LaggyStore:
            def watch(self, collection, on_snapshot, on_error=None):
                captured["deliver"] = on_snapshot
                return mock.Mock()

        callback = mock.Mock()
        subscription = watch_directory(LaggyStore(), callback, exclude_id="me")
        subscription.cancel()
        captured["deliver"]([user_doc("u1", uid="u1", displayName="Ann", email="a@x.io")])

        callback.assert_not_called()


class ProfileBookkeepingTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.now = 1_000
        self.documents = InMemoryDocumentStore(now_func=lambda: self.now)
        self.principal = Participant(uid="u1", display_name="", email="ann@example.com", providers=("password",))

    async def test_first_sign_in_creates_record(self):
        await upsert_profile(self.documents, self.principal, push_token="tok")

        record = await self.documents.get(USERS_COLLECTION, "u1")
        self.assertEqual(record["displayName"], "ann")
        self.assertEqual(record["createdAt"], 1_000)
        self.assertEqual(record["lastLogin"], 1_000)
        self.assertEqual(record["fcmToken"], "tok")
        self.assertEqual(record["providers"], ["password"])
        self.assertFalse(record["phoneVerified"])

    async def test_later_sign_in_keeps_created_at_and_token(self):
        await upsert_profile(self.documents, self.principal, push_token="tok")
        self.now = 2_000
        await upsert_profile(self.documents, Participant(uid="u1", display_name="Ann", email="ann@example.com"))

        record = await self.documents.get(USERS_COLLECTION, "u1")
        self.assertEqual(record["createdAt"], 1_000)
        self.assertEqual(record["lastLogin"], 2_000)
        self.assertEqual(record["fcmToken"], "tok")
        self.assertEqual(record["displayName"], "Ann")
        self.assertEqual(record["providers"], ["google"])

    async def test_repair_restores_admission(self):
        await self.documents.set(USERS_COLLECTION, "u1", {"uid": "u1", "fcmToken": "tok", "createdAt": 5})

        await repair_profile(self.documents, Participant(uid="u1", display_name="Ann", email="ann@example.com"))

        record = await self.documents.get(USERS_COLLECTION, "u1")
        self.assertEqual(record["createdAt"], 5)
        self.assertEqual(record["fcmToken"], "tok")
        self.assertEqual([p.uid for p in admit_participants(self.documents.snapshot(USERS_COLLECTION), None)], ["u1"])

    async def test_phone_link_and_verification_state(self):
        self.assertTrue(await needs_phone_verification(self.documents, "u1"))
        await upsert_profile(self.documents, self.principal)
        self.assertTrue(await needs_phone_verification(self.documents, "u1"))

        linked = Participant(
            uid="u1",
            display_name="Ann",
            email="ann@example.com",
            phone_number="+1555",
            providers=("password", "phone"),
        )
        await record_phone_link(self.documents, linked)

        self.assertFalse(await needs_phone_verification(self.documents, "u1"))
        self.assertTrue(await phone_number_exists(self.documents, "+1555"))
        self.assertFalse(await phone_number_exists(self.documents, "+1999"))

    async def test_lookups_fail_safe_on_store_errors(self):
        broken = mock.Mock()
        broken.get = mock.AsyncMock(side_effect=StoreError("offline"))
        broken.query = mock.AsyncMock(side_effect=OSError("offline"))

        self.assertTrue(await needs_phone_verification(broken, "u1"))
        self.assertFalse(await phone_number_exists(broken, "+1555"))

    async def test_remove_duplicate_profiles(self):
        await self.documents.set(USERS_COLLECTION, "a", {"uid": "u1"})
        await self.documents.set(USERS_COLLECTION, "u1", {"uid": "u1"})
        await self.documents.set(USERS_COLLECTION, "b", {"uid": "u2"})
        await self.documents.set(USERS_COLLECTION, "c", {"uid": "u2"})
        await self.documents.set(USERS_COLLECTION, "d", {"displayName": "no uid"})

        removed, unique = await remove_duplicate_profiles(self.documents)

        self.assertEqual((removed, unique), (3, 2))
        remaining = [doc.doc_id for doc in self.documents.snapshot(USERS_COLLECTION)]
        self.assertEqual(remaining, ["b", "u1"])


if __name__ == "__main__":
    unittest.main()
