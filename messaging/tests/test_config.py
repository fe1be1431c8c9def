import io
import logging
import os
import tempfile
import unittest
from unittest import mock

from messaging.blobs import HttpBlobStorage, LocalBlobStorage
from messaging.config import DEFAULT_TYPING_TTL_MS, MessagingConfig, load_config_from_env
from messaging.logging_config import configure_logging
from messaging.runtime import build_runtime


class ConfigTests(unittest.TestCase):
    def test_defaults_are_in_memory(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_config_from_env()

        self.assertEqual(config, MessagingConfig())
        self.assertFalse(config.durable)
        self.assertEqual(config.typing_ttl_ms, DEFAULT_TYPING_TTL_MS)

    def test_reads_environment(self):
        env = {
            "MESSAGING_DB_PATH": "/tmp/messaging.db",
            "MESSAGING_BLOB_BASE_URL": " https://blobs.example ",
            "MESSAGING_TYPING_TTL_MS": "2500",
            "MESSAGING_RESUBSCRIBE_ATTEMPTS": "0",
            "MESSAGING_LOG_LEVEL": "debug",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_config_from_env()

        self.assertTrue(config.durable)
        self.assertEqual(config.blob_base_url, "https://blobs.example")
        self.assertEqual(config.typing_ttl_ms, 2500)
        self.assertEqual(config.resubscribe_attempts, 0)
        self.assertEqual(config.log_level, "DEBUG")

    def test_rejects_bad_integers(self):
        for name, value in [
            ("MESSAGING_TYPING_TTL_MS", "soon"),
            ("MESSAGING_TYPING_TTL_MS", "0"),
            ("MESSAGING_RESUBSCRIBE_ATTEMPTS", "-1"),
        ]:
            with self.subTest(name=name, value=value):
                with mock.patch.dict(os.environ, {name: value}, clear=True):
                    with self.assertRaises(ValueError):
                        load_config_from_env()


class BuildRuntimeTests(unittest.IsolatedAsyncioTestCase):
    async def test_sqlite_runtime_uses_local_blobs(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = MessagingConfig(db_path=os.path.join(tmpdir, "db", "messaging.db"), blob_dir=tmpdir)
            runtime = build_runtime(config)
            try:
                self.assertIsNotNone(runtime.backend)
                self.assertIsInstance(runtime.blob_storage, LocalBlobStorage)
            finally:
                await runtime.close()

    async def test_base_url_alone_selects_http_storage(self):
        runtime = build_runtime(MessagingConfig(blob_base_url="http://127.0.0.1:8081"))
        try:
            self.assertIsNone(runtime.backend)
            self.assertIsInstance(runtime.blob_storage, HttpBlobStorage)
        finally:
            await runtime.close()


class LoggingTests(unittest.TestCase):
    def tearDown(self) -> None:
        configure_logging("WARNING")

    def test_stdlib_records_are_routed_to_loguru(self):
        sink = io.StringIO()
        configure_logging("INFO", sink=sink)

        logging.getLogger("messaging.messages").info("persisted message=%s", "msg_1")
        logging.getLogger("messaging.messages").debug("hidden")

        output = sink.getvalue()
        self.assertIn("messaging.messages", output)
        self.assertIn("persisted message=msg_1", output)
        self.assertNotIn("hidden", output)


if __name__ == "__main__":
    unittest.main()
