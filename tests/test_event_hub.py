# tests/test_event_hub.py

"""Tests for the in-process EventHub."""

import unittest
from typing import Any

from poolfeed.services.event_hub import EventHub


class TestEventHub(unittest.TestCase):
    """Live, per-user fan-out."""

    def setUp(self) -> None:
        self.hub = EventHub()

    def test_publish_reaches_every_subscriber_of_user(self) -> None:
        seen_a: list[dict[str, Any]] = []
        seen_b: list[dict[str, Any]] = []
        self.hub.subscribe("u1", seen_a.append)
        self.hub.subscribe("u1", seen_b.append)

        delivered = self.hub.publish("u1", {"type": "listing.updated"})
        self.assertEqual(delivered, 2)
        self.assertEqual(seen_a, [{"type": "listing.updated"}])
        self.assertEqual(seen_b, [{"type": "listing.updated"}])

    def test_other_users_do_not_receive(self) -> None:
        seen: list[dict[str, Any]] = []
        self.hub.subscribe("u2", seen.append)
        self.assertEqual(self.hub.publish("u1", {"type": "x"}), 0)
        self.assertEqual(seen, [])

    def test_unsubscribe_stops_delivery(self) -> None:
        seen: list[dict[str, Any]] = []
        unsubscribe = self.hub.subscribe("u1", seen.append)
        unsubscribe()
        unsubscribe()
        self.hub.publish("u1", {"type": "x"})
        self.assertEqual(seen, [])
        self.assertEqual(self.hub.subscriber_count("u1"), 0)

    def test_late_subscriber_misses_earlier_events(self) -> None:
        self.hub.publish("u1", {"type": "early"})
        seen: list[dict[str, Any]] = []
        self.hub.subscribe("u1", seen.append)
        self.hub.publish("u1", {"type": "late"})
        self.assertEqual(seen, [{"type": "late"}])

    def test_failing_handler_does_not_block_others(self) -> None:
        def broken(event: dict[str, Any]) -> None:
            raise RuntimeError("handler down")

        seen: list[dict[str, Any]] = []
        self.hub.subscribe("u1", broken)
        self.hub.subscribe("u1", seen.append)

        with self.assertLogs("poolfeed.events", level="ERROR"):
            delivered = self.hub.publish("u1", {"type": "x"})
        self.assertEqual(delivered, 1)
        self.assertEqual(seen, [{"type": "x"}])

    def test_handler_may_unsubscribe_during_publish(self) -> None:
        calls: list[str] = []
        unsubscribe: list[Any] = []

        def once(event: dict[str, Any]) -> None:
            calls.append(event["type"])
            unsubscribe[0]()

        unsubscribe.append(self.hub.subscribe("u1", once))
        self.hub.publish("u1", {"type": "a"})
        self.hub.publish("u1", {"type": "b"})
        self.assertEqual(calls, ["a"])


if __name__ == "__main__":
    unittest.main()
