import unittest

from messaging.config import MessagingConfig
from messaging.errors import UploadFailed, ValidationError
from messaging.models import Blob, Identity, MessageKind, MessageStatus
from messaging.runtime import build_runtime
from messaging.thread_view import ThreadView

from tests.messaging_util import FakeClock


class MemoryBlobStorage:
    def __init__(self) -> None:
        self.blobs = {}

    async def put(self, path, data, content_type):
        self.blobs[path] = data
        return f"memory://{path}"


class FakeTrack:
    def __init__(self) -> None:
        self.stops = 0

    def stop(self) -> None:
        self.stops += 1


class FakeStream:
    def __init__(self) -> None:
        self.tracks = [FakeTrack()]

    def read(self) -> bytes:
        return b"voice"


ALICE = Identity(user_id="alice", display_name="Alice")
BOB = Identity(user_id="bob", display_name="Counselor Bob")


class ThreadViewTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FakeClock()
        self.blobs = MemoryBlobStorage()
        self.runtime = build_runtime(MessagingConfig(), now_func=self.clock.now, blob_storage=self.blobs)
        self.views = []

    async def asyncTearDown(self) -> None:
        for view in self.views:
            await view.close()
        await self.runtime.close()

    def _view(self, identity: Identity, other: Identity, **kwargs) -> ThreadView:
        view = ThreadView(
            self.runtime,
            identity,
            other.user_id,
            other_display_name=other.display_name,
            **kwargs,
        )
        self.views.append(view)
        return view

    async def test_opening_marks_existing_messages_read(self):
        alice = self._view(ALICE, BOB)
        await alice.open()
        self.clock.advance(1)
        message_id = await alice.send_text("Hello")
        self.assertEqual(alice.messages[-1].status, MessageStatus.SENT)

        bob = self._view(BOB, ALICE)
        await bob.open()

        self.assertEqual([m.message_id for m in bob.messages], [message_id])
        self.assertEqual(alice.messages[-1].status, MessageStatus.READ)
        self.assertEqual(await self.runtime.conversations.unread_count(bob.conv_id, "bob"), 0)

    async def test_messages_arriving_while_open_are_marked_read(self):
        alice = self._view(ALICE, BOB)
        bob = self._view(BOB, ALICE)
        await alice.open()
        await bob.open()

        self.clock.advance(1)
        await alice.send_text("Are you free tomorrow?")
        await bob.settle()

        self.assertEqual(alice.messages[-1].status, MessageStatus.READ)

    async def test_typing_is_shown_to_the_other_side_and_cleared_on_send(self):
        alice = self._view(ALICE, BOB)
        bob = self._view(BOB, ALICE)
        await alice.open()
        await bob.open()

        alice.input_changed("I")
        self.assertTrue(bob.other_is_typing)
        self.assertFalse(alice.other_is_typing)

        await alice.send_text("I feel better")
        self.assertFalse(bob.other_is_typing)

    async def test_presence_of_other_participant_is_tracked(self):
        bob = self._view(BOB, ALICE)
        await bob.open()
        self.assertFalse(bob.other_presence.is_online)

        self.runtime.presence.set_online("alice")
        self.assertTrue(bob.other_presence.is_online)

    async def test_attachment_is_uploaded_then_sent(self):
        alice = self._view(ALICE, BOB)
        await alice.open()

        await alice.send_attachment(Blob(b"jpeg", file_name="sketch.jpg"), MessageKind.IMAGE, caption="my drawing")

        message = alice.messages[-1]
        self.assertEqual(message.kind, MessageKind.IMAGE)
        self.assertEqual(message.content, "my drawing")
        self.assertTrue(message.attachment.url.startswith("memory://images/alice/"))
        self.assertIn(message.attachment.path, self.blobs.blobs)

    async def test_link_url_becomes_the_attachment(self):
        alice = self._view(ALICE, BOB)
        await alice.open()

        await alice.send_link("see https://example.org/wellbeing")

        message = alice.messages[-1]
        self.assertEqual(message.kind, MessageKind.LINK)
        self.assertEqual(message.attachment.url, "https://example.org/wellbeing")

        with self.assertRaises(ValidationError):
            await alice.send_link("no address here")

    async def test_reply_uses_display_name_of_target_sender(self):
        alice = self._view(ALICE, BOB)
        bob = self._view(BOB, ALICE)
        await alice.open()
        await bob.open()
        self.clock.advance(1)
        question = await alice.send_text("Can we talk about exams?")

        self.clock.advance(1)
        await bob.reply(question, "Of course")

        reply = alice.messages[-1]
        self.assertEqual(reply.reply_to.message_id, question)
        self.assertEqual(reply.reply_to.sender_name, "Alice")

    async def test_voice_recording_is_sent_as_audio(self):
        streams = []

        def open_stream():
            streams.append(FakeStream())
            return streams[-1]

        alice = self._view(ALICE, BOB, open_stream=open_stream)
        await alice.open()
        alice.start_recording()
        self.clock.advance(12)

        await alice.send_recording()

        message = alice.messages[-1]
        self.assertEqual(message.kind, MessageKind.AUDIO)
        self.assertEqual(message.attachment.duration, "0:12")
        self.assertEqual(streams[0].tracks[0].stops, 1)

    async def test_close_releases_subscriptions_and_recorder(self):
        streams = []

        def open_stream():
            streams.append(FakeStream())
            return streams[-1]

        alice = self._view(ALICE, BOB, open_stream=open_stream)
        bob = self._view(BOB, ALICE)
        await alice.open()
        await bob.open()
        alice.start_recording()

        await alice.close()
        await alice.close()
        await bob.send_text("still there?")

        self.assertEqual(alice.messages, [])
        self.assertFalse(alice.is_open)
        self.assertEqual(streams[0].tracks[0].stops, 1)
        with self.assertRaises(ValidationError):
            await alice.open()

    async def test_context_manager_opens_and_closes(self):
        async with self._view(ALICE, BOB) as alice:
            self.assertTrue(alice.is_open)
        self.assertFalse(alice.is_open)

    async def test_without_blob_storage_uploads_fail(self):
        runtime = build_runtime(MessagingConfig(), now_func=self.clock.now)
        try:
            view = ThreadView(runtime, ALICE, "bob")
            with self.assertRaises(UploadFailed):
                await view.send_attachment(Blob(b"x", file_name="a.pdf"), MessageKind.FILE)
        finally:
            await runtime.close()


if __name__ == "__main__":
    unittest.main()
