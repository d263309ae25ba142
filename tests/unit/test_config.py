"""
Unit Tests for configuration, session storage and query keys
"""
import os
import stat

import pytest

from fly8sync.config import PollingOptions, SyncConfig
from fly8sync.exceptions import InvalidQueryKeyError
from fly8sync.query_key import QueryKey
from fly8sync.session import SessionStore
from tests.conftest import fake


class TestSyncConfig:
    """Defaults, env overrides and file round-trip"""

    def test_defaults(self, tmp_path):
        """Test observed default values"""
        config = SyncConfig(config_dir=str(tmp_path))

        assert config.request_timeout == 30.0
        assert config.socket_url == config.api_base_url
        assert config.transports == ["websocket", "polling"]
        assert config.polling["stats"].interval == 30.0
        assert config.polling["lists"].interval == 30.0
        assert config.polling["today"].interval == 60.0
        assert config.session_file == os.path.join(str(tmp_path), "session.json")

    def test_polling_for_disabled(self, tmp_path):
        """Test disabled profiles and global disable"""
        config = SyncConfig(config_dir=str(tmp_path))
        config.polling["today"] = PollingOptions(interval=60.0, enabled=False)

        assert config.polling_for("today") is None
        assert config.polling_for("missing") is None
        config.polling_enabled = False
        assert config.polling_for("stats") is None

    def test_env_overrides(self, tmp_path, monkeypatch):
        """Test FLY8_* variables override defaults"""
        monkeypatch.setenv("FLY8_CONFIG_DIR", str(tmp_path))
        monkeypatch.setenv("FLY8_API_URL", "https://api.fly8.global")
        monkeypatch.setenv("FLY8_REQUEST_TIMEOUT", "12.5")
        monkeypatch.setenv("FLY8_POLLING_ENABLED", "false")

        config = SyncConfig.load_default()

        assert config.api_base_url == "https://api.fly8.global"
        assert config.socket_url == "https://api.fly8.global"
        assert config.request_timeout == 12.5
        assert config.polling_enabled is False

    def test_file_round_trip(self, tmp_path):
        """Test save_to_file and load_from_file"""
        config = SyncConfig(config_dir=str(tmp_path), page_size=25)
        config.polling["stats"] = PollingOptions(interval=15.0)
        path = str(tmp_path / "config.json")
        config.save_to_file(path)

        loaded = SyncConfig(config_dir=str(tmp_path))
        loaded.load_from_file(path)

        assert loaded.page_size == 25
        assert loaded.polling["stats"].interval == 15.0


class TestSessionStore:
    """Persisted credential"""

    def test_save_and_reload(self, tmp_path):
        """Test the session survives a new store instance"""
        path = tmp_path / "session.json"
        user = {"_id": fake.uuid4(), "email": fake.email()}
        SessionStore(str(path)).save("tok", user)

        reloaded = SessionStore(str(path))

        assert reloaded.token == "tok"
        assert reloaded.user_id == user["_id"]
        assert reloaded.is_authenticated()

    def test_file_is_private(self, tmp_path):
        """Test the session file is chmod 600"""
        path = tmp_path / "session.json"
        SessionStore(str(path)).save("tok", {"_id": "a"})

        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_unauthenticated_listeners(self, tmp_path):
        """Test notify clears first, then calls every listener"""
        session = SessionStore(str(tmp_path / "session.json"))
        session.save("tok", {"_id": "a"})
        seen = []

        def broken(reason):
            raise RuntimeError("listener bug")

        session.add_unauthenticated_listener(broken)
        remove = session.add_unauthenticated_listener(lambda reason: seen.append((reason, session.token)))
        session.notify_unauthenticated("expired")

        assert seen == [("expired", None)]
        remove()
        session.notify_unauthenticated("again")
        assert len(seen) == 1

    def test_corrupt_file(self, tmp_path):
        """Test an unreadable file means no session"""
        path = tmp_path / "session.json"
        path.write_text("{not json")

        assert SessionStore(str(path)).is_authenticated() is False


class TestQueryKey:
    """Structured keys and prefix matching"""

    def test_filters_are_order_independent(self):
        """Test equal filters give equal keys"""
        assert QueryKey.of("students", page=1, status="all") == QueryKey.of("students", status="all", page=1)

    def test_none_filters_are_dropped(self):
        """Test search=None equals no search"""
        assert QueryKey.of("students", page=1, search=None) == QueryKey.of("students", page=1)

    def test_parse(self):
        """Test 'kind:ident' parsing"""
        key = QueryKey.parse("student:42")

        assert key.kind == "student"
        assert key.ident == "42"

    def test_parse_rejects_garbage(self):
        """Test invalid keys raise"""
        with pytest.raises(InvalidQueryKeyError):
            QueryKey.parse("")
        with pytest.raises(InvalidQueryKeyError):
            QueryKey.parse("student:")

    def test_matches_filter_subset(self):
        """Test a filtered key belongs to its kind and to a filter subset"""
        key = QueryKey.of("notifications", status="unread", limit=10)

        assert key.matches("notifications")
        assert key.matches(QueryKey.of("notifications", status="unread"))
        assert not key.matches(QueryKey.of("notifications", status="read"))
        assert not key.matches("notificationStats")

    def test_ident_matching(self):
        """Test ident prefixes"""
        key = QueryKey.of("messages", "c1", page=1)

        assert key.matches("messages")
        assert key.matches("messages:c1")
        assert not key.matches("messages:c2")

    def test_nested_filters_are_hashable(self):
        """Test dict and list filter values"""
        key = QueryKey.of("students", filters={"country": ["IN", "UK"]})

        assert hash(key) == hash(QueryKey.of("students", filters={"country": ["IN", "UK"]}))
