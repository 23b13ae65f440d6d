"""
A2W Runtime: Status Broadcaster Tests
"""

import asyncio
import os
import sys
import threading
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from a2w.envelope import wrap
from a2w.types import DataPayload, EventPayload, NeedData, StatusUpdate
from runtime.broadcaster import Channel, StatusBroadcaster, Subscription


def _status(n):
    return wrap("agent-a", StatusUpdate(task_id=f"T{n}", state="running"))


class TestSubscription(unittest.TestCase):

    def test_drop_oldest(self):
        sub = Subscription(Channel.STATUS, capacity=3)
        results = [sub.offer(_status(n)) for n in range(5)]
        self.assertEqual(results, [True, True, True, False, False])
        self.assertEqual(sub.dropped, 2)
        self.assertEqual([e.payload.task_id for e in sub.drain()], ["T2", "T3", "T4"])
        self.assertEqual(len(sub), 0)

    def test_poll(self):
        sub = Subscription(Channel.STATUS)
        self.assertIsNone(sub.poll())
        sub.offer(_status(1))
        self.assertEqual(sub.poll().payload.task_id, "T1")

    def test_capacity_must_be_positive(self):
        with self.assertRaises(ValueError):
            Subscription(Channel.STATUS, capacity=0)

    def test_closed_ignores_offers(self):
        sub = Subscription(Channel.STATUS)
        sub.close()
        sub.offer(_status(1))
        self.assertEqual(len(sub), 0)

    def test_async_get_wakes_from_thread(self):
        sub = Subscription(Channel.STATUS)

        async def consume():
            sub.bind_loop(asyncio.get_running_loop())
            threading.Timer(0.01, sub.offer, args=(_status(7),)).start()
            return await asyncio.wait_for(sub.get(), timeout=2)

        envelope = asyncio.run(consume())
        self.assertEqual(envelope.payload.task_id, "T7")

    def test_async_get_returns_none_after_close(self):
        sub = Subscription(Channel.STATUS)

        async def consume():
            sub.bind_loop(asyncio.get_running_loop())
            asyncio.get_running_loop().call_later(0.01, sub.close)
            return await asyncio.wait_for(sub.get(), timeout=2)

        self.assertIsNone(asyncio.run(consume()))


class TestStatusBroadcaster(unittest.TestCase):

    def setUp(self):
        self.overflows = []
        self.broadcaster = StatusBroadcaster(buffer_size=2, on_overflow=self.overflows.append)

    def test_routes_by_message_type(self):
        status = self.broadcaster.subscribe("status")
        needs = self.broadcaster.subscribe(Channel.NEEDS)
        events = self.broadcaster.subscribe("events")

        self.assertEqual(self.broadcaster.publish(_status(1)), 1)
        self.broadcaster.publish(wrap("agent-a", NeedData(task_id="T1", required=["x"])))
        self.broadcaster.publish(wrap("agent-a", EventPayload(event="weight_update")))

        self.assertEqual(len(status), 1)
        self.assertEqual(len(needs), 1)
        self.assertEqual(len(events), 1)

    def test_payload_messages_are_not_broadcast(self):
        sub = self.broadcaster.subscribe("status")
        self.assertEqual(self.broadcaster.publish(wrap("agent-a", DataPayload(data={}))), 0)
        self.assertEqual(len(sub), 0)

    def test_fan_out(self):
        subs = [self.broadcaster.subscribe("status") for _ in range(3)]
        self.assertEqual(self.broadcaster.publish(_status(1)), 3)
        self.assertTrue(all(len(s) == 1 for s in subs))

    def test_overflow_reported_once(self):
        sub = self.broadcaster.subscribe("status")
        for n in range(6):
            self.broadcaster.publish(_status(n))
        self.assertEqual(self.overflows, [sub])
        self.assertEqual(sub.dropped, 4)

    def test_unknown_channel(self):
        with self.assertRaises(ValueError):
            self.broadcaster.subscribe("gossip")

    def test_unsubscribe(self):
        sub = self.broadcaster.subscribe("status")
        self.broadcaster.unsubscribe(sub)
        self.assertTrue(sub.closed)
        self.assertEqual(self.broadcaster.subscriber_count("status"), 0)
        self.assertEqual(self.broadcaster.publish(_status(1)), 0)

    def test_close_all(self):
        subs = [self.broadcaster.subscribe(c) for c in Channel]
        self.assertEqual(self.broadcaster.subscriber_count(), 4)
        self.broadcaster.close()
        self.assertTrue(all(s.closed for s in subs))
        self.assertEqual(self.broadcaster.subscriber_count(), 0)


if __name__ == "__main__":
    unittest.main()
