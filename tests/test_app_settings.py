"""
Tests for settings loading.
"""

import json

import app_settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("RECITE_BACKEND_WS_URL", raising=False)
        monkeypatch.delenv("RECITE_BACKEND_HTTP_BASE", raising=False)
        s = app_settings.default_settings()
        assert s["ws_url"] == "ws://localhost:8000/ws"
        assert s["feedback_mode"] == "highlight"
        assert s["sample_rate"] == 16_000

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("RECITE_BACKEND_WS_URL", "wss://example.org/ws")
        monkeypatch.setenv("RECITE_BACKEND_HTTP_BASE", "https://example.org/api/")
        s = app_settings.default_settings()
        assert s["ws_url"] == "wss://example.org/ws"
        assert app_settings.upload_url(s) == "https://example.org/api/upload-training-audio/"
        assert app_settings.sync_mistakes_url(s) == "https://example.org/api/sync-mistakes/"

    def test_file_overrides_defaults(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"feedback_mode": "spoken", "http_base": "http://h:1/"}))

        s = app_settings.load_settings(app_settings.default_settings(), str(path))

        assert s["feedback_mode"] == "spoken"
        assert s["http_base"] == "http://h:1"
        assert s["sample_rate"] == 16_000

    def test_invalid_mode_falls_back(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"feedback_mode": "vibrate"}))
        s = app_settings.load_settings(app_settings.default_settings(), str(path))
        assert s["feedback_mode"] == "highlight"

    def test_unreadable_file_is_ignored(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{broken")
        defaults = app_settings.default_settings()
        assert app_settings.load_settings(defaults, str(path)) == defaults

    def test_missing_file(self, tmp_path):
        defaults = app_settings.default_settings()
        assert app_settings.load_settings(defaults, str(tmp_path / "none.json")) == defaults

    def test_loading_leaves_the_file_untouched(self, tmp_path):
        path = tmp_path / "settings.json"
        raw = json.dumps({"feedback_mode": "vibrate", "extra": 1})
        path.write_text(raw)

        app_settings.load_settings(app_settings.default_settings(), str(path))

        assert path.read_text() == raw
        assert not hasattr(app_settings, "save_settings")
