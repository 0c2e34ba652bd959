import unittest

from chatstore.hub import SubscriptionHub


class SubscriptionHubTests(unittest.TestCase):
    def test_broadcast_reaches_every_listener_of_topic(self):
        hub = SubscriptionHub()
        seen_a = []
        seen_b = []
        other = []
        hub.subscribe("doc:users", seen_a.append)
        hub.subscribe("doc:users", seen_b.append)
        hub.subscribe("doc:chats", other.append)

        hub.broadcast("doc:users", [1, 2])

        self.assertEqual(seen_a, [[1, 2]])
        self.assertEqual(seen_b, [[1, 2]])
        self.assertEqual(other, [])

    def test_cancel_is_idempotent_and_stops_delivery(self):
        hub = SubscriptionHub()
        seen = []
        subscription = hub.subscribe("log:a_b", seen.append)

        subscription.cancel()
        subscription.cancel()
        hub.broadcast("log:a_b", ["x"])

        self.assertEqual(seen, [])
        self.assertFalse(subscription.active)
        self.assertFalse(hub.has_listeners("log:a_b"))

    def test_fail_delivers_error_once_and_drops_listeners(self):
        hub = SubscriptionHub()
        errors = []
        snapshots = []
        subscription = hub.subscribe("doc:users", snapshots.append, errors.append)
        failure = RuntimeError("permission denied")

        hub.fail("doc:users", failure)
        hub.fail("doc:users", failure)
        hub.broadcast("doc:users", ["late"])

        self.assertEqual(errors, [failure])
        self.assertEqual(snapshots, [])
        self.assertFalse(subscription.active)
        self.assertEqual(hub.listener_count("doc:users"), 0)

    def test_fail_without_error_handler_logs(self):
        hub = SubscriptionHub()
        hub.subscribe("doc:users", lambda snapshot: None)

        with self.assertLogs("chatstore.hub", level="ERROR"):
            hub.fail("doc:users", RuntimeError("boom"))

    def test_broadcast_copies_snapshot_per_listener(self):
        hub = SubscriptionHub()
        received = []

        def mutate(snapshot):
            snapshot.append("mutated")
            received.append(snapshot)

        hub.subscribe("doc:users", mutate)
        hub.subscribe("doc:users", received.append)
        hub.broadcast("doc:users", ["a"])

        self.assertEqual(received[1], ["a"])


if __name__ == "__main__":
    unittest.main()
