import asyncio
import os
import stat
import tempfile
import unittest
from pathlib import Path

from chat_sync.config import OFFLINE_TOKEN
from chat_sync.tokens import (
    FileTokenProvider,
    StaticTokenProvider,
    clear_session,
    load_session,
    save_session,
    usable_token,
)


class UsableTokenTests(unittest.TestCase):
    def test_blank_and_sentinel_tokens_are_unusable(self):
        self.assertIsNone(usable_token(None))
        self.assertIsNone(usable_token(""))
        self.assertIsNone(usable_token("   "))
        self.assertIsNone(usable_token(OFFLINE_TOKEN))
        self.assertEqual(usable_token("abc"), "abc")

    def test_custom_sentinel(self):
        self.assertIsNone(usable_token("offline", "offline"))
        self.assertEqual(usable_token(OFFLINE_TOKEN, "offline"), OFFLINE_TOKEN)


class SessionFileTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "nested" / "session.json"

    def tearDown(self):
        self._tmp.cleanup()

    def test_save_load_clear(self):
        self.assertIsNone(load_session(self.path))
        save_session("tok", "buyer-1", self.path)
        self.assertEqual(load_session(self.path), {"token": "tok", "user_id": "buyer-1"})
        self.assertTrue(clear_session(self.path))
        self.assertFalse(clear_session(self.path))
        self.assertIsNone(load_session(self.path))

    def test_session_file_is_private(self):
        save_session("tok", path=self.path)
        mode = stat.S_IMODE(os.stat(self.path).st_mode)
        self.assertEqual(mode, 0o600)
        self.assertEqual(load_session(self.path), {"token": "tok"})

    def test_unreadable_file_is_ignored(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json", encoding="utf-8")
        with self.assertLogs("chat_sync.tokens", level="WARNING"):
            self.assertIsNone(load_session(self.path))

        self.path.write_text('{"token": ""}', encoding="utf-8")
        self.assertIsNone(load_session(self.path))

    def test_file_provider_reads_and_invalidates(self):
        provider = FileTokenProvider(self.path)
        self.assertIsNone(asyncio.run(provider.get_token()))

        save_session("tok", "buyer-1", self.path)
        self.assertEqual(asyncio.run(provider.get_token()), "tok")
        self.assertEqual(provider.user_id(), "buyer-1")

        provider.invalidate()
        self.assertFalse(self.path.exists())
        self.assertIsNone(asyncio.run(provider.get_token()))


class StaticTokenProviderTests(unittest.TestCase):
    def test_invalidate_forgets_token(self):
        provider = StaticTokenProvider("tok")
        provider.invalidate()
        self.assertIsNone(asyncio.run(provider.get_token()))
        self.assertEqual(provider.invalidations, 1)


if __name__ == "__main__":
    unittest.main()
