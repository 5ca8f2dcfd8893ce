import asyncio
import json
import unittest

from notification_service.broadcaster import NotificationBroadcaster, StreamClient, make_event


class RecordingClient:
    def __init__(self):
        self.frames = []

    async def send(self, text):
        self.frames.append(json.loads(text))


class DeadClient:
    async def send(self, text):
        raise ConnectionResetError("peer gone")


class TestBroadcaster(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.broadcaster = NotificationBroadcaster()

    async def test_fans_out_to_every_tab_of_a_user(self):
        tab1, tab2, other = RecordingClient(), RecordingClient(), RecordingClient()
        self.broadcaster.add_client("u1", tab1)
        self.broadcaster.add_client("u1", tab2)
        self.broadcaster.add_client("u2", other)

        delivered = await self.broadcaster.broadcast_to_user("u1", make_event("new_notification", "u1", {"id": 1}))

        self.assertEqual(delivered, 2)
        self.assertEqual(tab1.frames[0]["type"], "new_notification")
        self.assertEqual(tab2.frames[0]["userId"], "u1")
        self.assertEqual(other.frames, [])

    async def test_dead_clients_are_removed(self):
        alive = RecordingClient()
        self.broadcaster.add_client("u1", DeadClient())
        self.broadcaster.add_client("u1", alive)

        delivered = await self.broadcaster.broadcast_to_user("u1", make_event("heartbeat", "u1"))

        self.assertEqual(delivered, 1)
        self.assertEqual(self.broadcaster.client_count("u1"), 1)

    async def test_last_client_removal_forgets_user(self):
        client = RecordingClient()
        self.broadcaster.add_client("u1", client)
        self.broadcaster.remove_client("u1", client)
        self.assertFalse(self.broadcaster.is_user_connected("u1"))
        self.assertEqual(self.broadcaster.total_clients(), 0)
        # Removing twice is harmless
        self.broadcaster.remove_client("u1", client)

    async def test_broadcast_to_all_addresses_each_user(self):
        a, b = RecordingClient(), RecordingClient()
        self.broadcaster.add_client("a", a)
        self.broadcaster.add_client("b", b)
        await self.broadcaster.broadcast_to_all(make_event("maintenance", "*"))
        self.assertEqual(a.frames[0]["userId"], "a")
        self.assertEqual(b.frames[0]["userId"], "b")

    async def test_publish_from_another_thread(self):
        client = RecordingClient()
        self.broadcaster.add_client("u1", client)
        self.broadcaster.bind_loop(asyncio.get_running_loop())

        future = await asyncio.to_thread(
            self.broadcaster.publish_threadsafe, "u1", make_event("new_notification", "u1", {"id": 7})
        )
        delivered = await asyncio.wrap_future(future)

        self.assertEqual(delivered, 1)
        self.assertEqual(client.frames[0]["data"], {"id": 7})

    async def test_publish_without_loop_is_dropped(self):
        self.assertIsNone(self.broadcaster.publish_threadsafe("u1", make_event("heartbeat", "u1")))

    async def test_stalled_stream_client_is_dropped(self):
        stream = StreamClient(max_pending=1)
        self.broadcaster.add_client("u1", stream)
        await self.broadcaster.broadcast_to_user("u1", make_event("heartbeat", "u1"))
        await self.broadcaster.broadcast_to_user("u1", make_event("heartbeat", "u1"))
        self.assertEqual(stream.queue.qsize(), 1)
        self.assertFalse(self.broadcaster.is_user_connected("u1"))


if __name__ == "__main__":
    unittest.main()
