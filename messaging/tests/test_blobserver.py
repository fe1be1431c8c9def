import os
import tempfile
import unittest

import aiohttp
from aiohttp.test_utils import TestClient, TestServer

from messaging.attachments import AttachmentPipeline
from messaging.blobs import HttpBlobStorage
from messaging.blobserver import create_blob_app
from messaging.errors import UploadFailed
from messaging.models import Blob, MessageKind


class BlobServerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.app = create_blob_app(self.tmpdir.name, max_blob_size=1024)
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()
        self.base_url = str(self.server.make_url("")).rstrip("/")

    async def asyncTearDown(self) -> None:
        await self.client.close()
        await self.server.close()
        self.tmpdir.cleanup()

    async def test_health(self):
        resp = await self.client.get("/healthz")

        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.text(), "ok")

    async def test_put_then_get_round_trip(self):
        resp = await self.client.put(
            "/blobs/images/alice/1.png", data=b"\x89PNG", headers={"Content-Type": "image/png"}
        )
        body = await resp.json()

        self.assertEqual(resp.status, 200)
        self.assertEqual(body["path"], "images/alice/1.png")
        self.assertEqual(body["size"], 4)
        self.assertTrue(body["url"].endswith("/blobs/images/alice/1.png"))
        self.assertTrue(os.path.exists(os.path.join(self.tmpdir.name, "images", "alice", "1.png")))

        fetched = await self.client.get("/blobs/images/alice/1.png")
        self.assertEqual(await fetched.read(), b"\x89PNG")

    async def test_rejects_empty_oversized_and_missing(self):
        empty = await self.client.put("/blobs/files/a/1_x.txt", data=b"")
        self.assertEqual(empty.status, 400)

        large = await self.client.put("/blobs/files/a/2_x.txt", data=b"x" * 2048)
        self.assertEqual(large.status, 413)

        missing = await self.client.get("/blobs/files/a/none.txt")
        self.assertEqual(missing.status, 404)

    async def test_http_storage_uploads_through_pipeline(self):
        async with aiohttp.ClientSession() as session:
            storage = HttpBlobStorage(self.base_url, session=session)
            pipeline = AttachmentPipeline(storage)

            attachment = await pipeline.upload("alice", Blob(b"notes", file_name="notes.txt"), MessageKind.FILE)

            self.assertTrue(attachment.url.startswith(self.base_url))
            resp = await session.get(attachment.url)
            self.assertEqual(await resp.read(), b"notes")

    async def test_http_storage_maps_rejections_to_upload_failed(self):
        storage = HttpBlobStorage(self.base_url)
        try:
            with self.assertRaises(UploadFailed):
                await storage.put("files/alice/1_big.bin", b"x" * 2048, "application/octet-stream")
        finally:
            await storage.close()


if __name__ == "__main__":
    unittest.main()
