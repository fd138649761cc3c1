"""Tests for the tracker's best-effort stores."""
from __future__ import annotations

import json
from unittest import mock

import redis

from pixeltrack.client.storage import FileStorage, MemoryStorage, RedisStorage


class TestMemoryStorage:
    def test_round_trip(self):
        s = MemoryStorage()
        assert s.get("k") is None
        assert s.set("k", "v")
        assert s.get("k") == "v"
        assert s.remove("k")
        assert s.get("k") is None


class TestFileStorage:
    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "state.json"
        assert FileStorage(path).set("pixel_session_data", '{"sessionId": "sess_x"}')
        assert FileStorage(path).get("pixel_session_data") == '{"sessionId": "sess_x"}'
        assert json.loads(path.read_text()) == {"pixel_session_data": '{"sessionId": "sess_x"}'}

    def test_remove(self, tmp_path):
        s = FileStorage(tmp_path / "state.json")
        s.set("a", "1")
        s.set("b", "2")
        assert s.remove("a")
        assert s.remove("missing")
        assert s.get("a") is None
        assert s.get("b") == "2"

    def test_corrupt_file_reads_as_empty(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{broken")
        s = FileStorage(path)
        assert s.get("a") is None
        assert s.set("a", "1")
        assert s.get("a") == "1"

    def test_unavailable_directory(self, tmp_path):
        s = FileStorage(tmp_path / "nope" / "state.json")
        assert not s.available
        assert s.get("a") is None
        assert s.set("a", "1") is False

    def test_no_temp_files_left_behind(self, tmp_path):
        s = FileStorage(tmp_path / "state.json")
        for i in range(5):
            s.set("k", str(i))
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]


class TestRedisStorage:
    def test_prefixed_keys(self):
        r = mock.Mock()
        r.get.return_value = b"value"
        s = RedisStorage(client=r, prefix="px:")
        assert s.set("k", "value")
        r.set.assert_called_once_with("px:k", "value")
        assert s.get("k") == "value"
        r.get.assert_called_once_with("px:k")
        assert s.remove("k")
        r.delete.assert_called_once_with("px:k")

    def test_missing_key(self):
        r = mock.Mock()
        r.get.return_value = None
        assert RedisStorage(client=r).get("k") is None

    def test_errors_are_swallowed(self):
        r = mock.Mock()
        r.ping.side_effect = redis.ConnectionError("down")
        r.get.side_effect = redis.ConnectionError("down")
        r.set.side_effect = redis.TimeoutError("slow")
        r.delete.side_effect = redis.ConnectionError("down")
        s = RedisStorage(client=r)
        assert s.available is False
        assert s.get("k") is None
        assert s.set("k", "v") is False
        assert s.remove("k") is False
