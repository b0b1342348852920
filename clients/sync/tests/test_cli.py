import io
import json
import unittest
from unittest import mock

from chat_sync.cli import _load_frames, main
from chat_sync.models import now_ms


class TestChatSyncCli(unittest.TestCase):
    def test_load_frames_accepts_array_or_lines(self):
        array_buffer = io.StringIO(json.dumps([{"event": "typing"}]))
        ndjson_buffer = io.StringIO('{"event": "one"}\n\n{"event": "two"}\n')

        self.assertEqual(_load_frames(array_buffer), [{"event": "typing"}])
        self.assertEqual(_load_frames(ndjson_buffer), [{"event": "one"}, {"event": "two"}])
        self.assertEqual(_load_frames(io.StringIO("  ")), [])

    def test_replay_prints_reconciled_view(self):
        stamp = now_ms()

        def arrived(message_id, sender, content, created_at):
            return {
                "event": "new_message",
                "payload": {
                    "id": message_id,
                    "conversationId": "c1",
                    "senderId": sender,
                    "content": content,
                    "createdAt": created_at,
                },
            }

        frames = [
            arrived("m2", "bob", "second", stamp - 1000),
            arrived("m1", "bob", "first", stamp - 2000),
            {"event": "local.send", "payload": {"content": "reply"}},
            arrived("srv_9", "alice", "reply", stamp + 1000),
            {
                "event": "message_deleted",
                "payload": {"messageId": "m2", "conversationId": "c1", "deleteForEveryone": True, "deletedAt": stamp},
            },
        ]
        stdin = io.StringIO("\n".join(json.dumps(frame) for frame in frames))
        buffer = io.StringIO()

        with mock.patch("sys.stdin", stdin):
            exit_code = main(["replay", "--user", "alice", "--conversation", "c1", "--member", "bob"], output=buffer)

        lines = [json.loads(line) for line in buffer.getvalue().splitlines()]
        self.assertEqual(exit_code, 0)
        self.assertEqual([line["id"] for line in lines], ["m1", "m2", "srv_9"])
        self.assertTrue(lines[1]["deleted_for_all"])
        self.assertIsNone(lines[1]["content"])
        self.assertEqual(lines[0]["status"], "read")
        self.assertEqual(lines[2]["status"], "sent")

    def test_replay_rejects_frames_without_event(self):
        buffer = io.StringIO()

        with mock.patch("sys.stdin", io.StringIO('[{"payload": {}}]')):
            with self.assertRaises(ValueError):
                main(["replay", "--user", "alice", "--conversation", "c1", "--kind", "group"], output=buffer)

    def test_replay_reports_malformed_environment(self):
        buffer = io.StringIO()
        stderr = io.StringIO()

        with mock.patch.dict("os.environ", {"CHAT_SYNC_PAGE_SIZE": "lots"}):
            with mock.patch("sys.stdin", io.StringIO("")), mock.patch("sys.stderr", stderr):
                exit_code = main(["replay", "--user", "alice", "--conversation", "c1"], output=buffer)

        self.assertEqual(exit_code, 1)
        self.assertEqual(buffer.getvalue(), "")
        self.assertIn("CHAT_SYNC_PAGE_SIZE", stderr.getvalue())

    def test_history_reports_unreachable_server(self):
        buffer = io.StringIO()

        exit_code = main(["history", "--base-url", "http://127.0.0.1:1", "--conversation", "c1"], output=buffer)

        self.assertEqual(exit_code, 1)
        self.assertEqual(buffer.getvalue(), "")
