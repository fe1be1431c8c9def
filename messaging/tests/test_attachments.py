import os
import tempfile
import unittest

from messaging.attachments import AttachmentPipeline
from messaging.blobs import LocalBlobStorage
from messaging.conversations import conversation_id
from messaging.errors import UploadFailed, ValidationError
from messaging.models import Blob, FileCategory, MessageKind

from tests.messaging_util import FakeClock, make_store, text_draft


class RecordingStorage:
    def __init__(self) -> None:
        self.puts = []
        self.fail = False

    async def put(self, path, data, content_type):
        if self.fail:
            raise UploadFailed("blob service unavailable")
        self.puts.append((path, data, content_type))
        return f"https://blobs.example/{path}"


class AttachmentPipelineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.storage = RecordingStorage()
        self.pipeline = AttachmentPipeline(self.storage, clock_ns=lambda: 1_000)

    async def test_paths_follow_kind_layout(self):
        audio = await self.pipeline.upload("alice", Blob(b"ogg", duration="0:07"), MessageKind.AUDIO)
        image = await self.pipeline.upload("alice", Blob(b"png", file_name="Me.PNG"), "image")
        doc = await self.pipeline.upload("alice", Blob(b"pdf", file_name="my notes (1).pdf"), MessageKind.FILE)

        self.assertEqual(audio.path, "audio_messages/alice/1000.webm")
        self.assertEqual(image.path, "images/alice/1001.png")
        self.assertEqual(doc.path, "files/alice/1002_my_notes__1_.pdf")
        self.assertEqual(doc.file_name, "my notes (1).pdf")
        self.assertEqual(doc.category, FileCategory.PDF)
        self.assertEqual(doc.content_type, "application/pdf")
        self.assertEqual(audio.content_type, "audio/webm")
        self.assertEqual(audio.category, FileCategory.AUDIO)

    async def test_same_instant_uploads_never_collide(self):
        blob = Blob(b"jpg", file_name="photo.jpg")
        attachments = [await self.pipeline.upload("alice", blob, MessageKind.IMAGE) for _ in range(3)]

        paths = [attachment.path for attachment in attachments]
        self.assertEqual(len(set(paths)), 3)
        self.assertEqual([path for path, _, _ in self.storage.puts], paths)

    async def test_image_without_extension_defaults_to_jpg(self):
        attachment = await self.pipeline.upload("alice", Blob(b"raw"), MessageKind.IMAGE)

        self.assertEqual(attachment.path, "images/alice/1000.jpg")
        self.assertEqual(attachment.file_size, 3)

    async def test_storage_failure_surfaces_upload_failed(self):
        self.storage.fail = True

        with self.assertRaises(UploadFailed):
            await self.pipeline.upload("alice", Blob(b"x", file_name="a.txt"), MessageKind.FILE)

    async def test_rejects_invalid_uploads(self):
        with self.assertRaises(ValidationError):
            await self.pipeline.upload("alice", Blob(b"x"), MessageKind.TEXT)
        with self.assertRaises(ValidationError):
            await self.pipeline.upload("alice", Blob(b""), MessageKind.FILE)
        with self.assertRaises(ValidationError):
            await self.pipeline.upload("../alice", Blob(b"x"), MessageKind.FILE)
        self.assertEqual(self.storage.puts, [])

    async def test_audio_duration_is_carried_into_the_message(self):
        clock = FakeClock()
        store = make_store(clock)
        attachment = await self.pipeline.upload(
            "alice", Blob(b"voice", content_type="audio/webm", duration="0:42"), MessageKind.AUDIO
        )
        draft = text_draft(
            conversation_id("alice", "bob"), "alice", "bob", "", kind=MessageKind.AUDIO, attachment=attachment
        )

        message = await store.get(await store.append(draft))

        self.assertEqual(message.attachment.duration, "0:42")


class LocalBlobStorageTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.storage = LocalBlobStorage(self.tmpdir.name, "http://localhost:8081/blobs/")

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    async def test_put_writes_file_and_returns_url(self):
        url = await self.storage.put("files/alice/1_a.txt", b"hello", "text/plain")

        self.assertEqual(url, "http://localhost:8081/blobs/files/alice/1_a.txt")
        with open(os.path.join(self.tmpdir.name, "files", "alice", "1_a.txt"), "rb") as handle:
            self.assertEqual(handle.read(), b"hello")

    async def test_put_rejects_paths_outside_root(self):
        with self.assertRaises(ValidationError):
            await self.storage.put("../escape.txt", b"x", "text/plain")


if __name__ == "__main__":
    unittest.main()
