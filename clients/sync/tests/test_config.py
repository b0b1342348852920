import unittest

from chat_sync.config import SyncConfig


class TestSyncConfig(unittest.TestCase):
    def test_defaults(self):
        config = SyncConfig()

        self.assertEqual(config.page_size, 50)
        self.assertEqual(config.confirm_window_ms, 30_000)
        self.assertEqual(config.pending_timeout_ms, 30_000)
        self.assertEqual(config.presence_timeout_seconds, 3.0)
        self.assertTrue(config.auto_mark_read)

    def test_from_env_overrides(self):
        config = SyncConfig.from_env(
            {
                "CHAT_SYNC_PAGE_SIZE": "20",
                "CHAT_SYNC_AUTO_MARK_READ": "off",
                "CHAT_SYNC_TYPING_IDLE_SECONDS": "0.5",
                "CHAT_SYNC_PRESENCE_TIMEOUT_SECONDS": "  ",
                "UNRELATED": "1",
            }
        )

        self.assertEqual(config.page_size, 20)
        self.assertFalse(config.auto_mark_read)
        self.assertEqual(config.typing_idle_seconds, 0.5)
        self.assertEqual(config.presence_timeout_seconds, 3.0)

    def test_from_env_names_bad_variable(self):
        with self.assertRaisesRegex(ValueError, "CHAT_SYNC_PAGE_SIZE"):
            SyncConfig.from_env({"CHAT_SYNC_PAGE_SIZE": "lots"})
        with self.assertRaisesRegex(ValueError, "CHAT_SYNC_AUTO_MARK_READ"):
            SyncConfig.from_env({"CHAT_SYNC_AUTO_MARK_READ": "maybe"})

    def test_rejects_non_positive_values(self):
        with self.assertRaises(ValueError):
            SyncConfig(page_size=0)
        with self.assertRaises(ValueError):
            SyncConfig(typing_expiry_seconds=0)
