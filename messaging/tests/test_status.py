import unittest

from messaging.conversations import conversation_id
from messaging.errors import Forbidden, NotFound, ValidationError
from messaging.models import MessageStatus
from messaging.status import DeliveryStatusMachine

from tests.messaging_util import FakeClock, make_store, text_draft


class DeliveryStatusTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.store = make_store(self.clock)
        self.statuses = DeliveryStatusMachine(self.store)
        self.conv_id = conversation_id("alice", "bob")

    async def _send(self, sender: str, receiver: str, content: str) -> str:
        self.clock.advance(1)
        return await self.store.append(text_draft(self.conv_id, sender, receiver, content))

    async def _status(self, message_id: str) -> MessageStatus:
        return (await self.store.get(message_id)).status

    async def test_advance_steps_through_intermediate_states(self):
        message_id = await self._send("alice", "bob", "hi")
        snapshots = []
        await self.store.subscribe(
            self.conv_id, lambda messages: snapshots.append(messages[0].status), viewer_id="alice"
        )

        advanced = await self.statuses.advance(message_id, "bob", MessageStatus.READ)

        self.assertTrue(advanced)
        self.assertEqual(snapshots, [MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ])

    async def test_backward_transitions_are_ignored(self):
        message_id = await self._send("alice", "bob", "hi")
        await self.statuses.advance(message_id, "bob", "read")

        self.assertFalse(await self.statuses.advance(message_id, "bob", MessageStatus.DELIVERED))
        self.assertFalse(await self.statuses.advance(message_id, "bob", MessageStatus.READ))
        self.assertEqual(await self._status(message_id), MessageStatus.READ)

    async def test_unknown_status_is_a_validation_error(self):
        message_id = await self._send("alice", "bob", "hi")

        with self.assertRaises(ValidationError):
            await self.statuses.advance(message_id, "bob", "seen")
        self.assertTrue(await self.statuses.advance(message_id, "bob", " Delivered "))
        self.assertEqual(await self._status(message_id), MessageStatus.DELIVERED)

    async def test_only_the_recipient_acknowledges(self):
        message_id = await self._send("alice", "bob", "hi")

        with self.assertRaises(Forbidden):
            await self.statuses.advance(message_id, "alice", MessageStatus.READ)
        with self.assertRaises(NotFound):
            await self.statuses.advance("msg_missing", "bob", MessageStatus.READ)
        with self.assertRaises(Forbidden):
            await self.statuses.mark_read(self.conv_id, "mallory")

    async def test_mark_read_bulk_marks_only_incoming(self):
        incoming = [await self._send("alice", "bob", text) for text in ("one", "two")]
        outgoing = await self._send("bob", "alice", "three")

        changed = await self.statuses.mark_read(self.conv_id, "bob")

        self.assertEqual(changed, incoming)
        for message_id in incoming:
            self.assertEqual(await self._status(message_id), MessageStatus.READ)
        self.assertEqual(await self._status(outgoing), MessageStatus.SENT)
        self.assertEqual(await self.statuses.mark_read(self.conv_id, "bob"), [])

    async def test_mark_delivered_does_not_regress_read(self):
        first = await self._send("alice", "bob", "one")
        await self.statuses.mark_read(self.conv_id, "bob")
        second = await self._send("alice", "bob", "two")

        changed = await self.statuses.mark_delivered(self.conv_id, "bob")

        self.assertEqual(changed, [second])
        self.assertEqual(await self._status(first), MessageStatus.READ)
        self.assertEqual(await self._status(second), MessageStatus.DELIVERED)


if __name__ == "__main__":
    unittest.main()
