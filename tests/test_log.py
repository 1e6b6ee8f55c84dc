"""
日志模块测试
"""

import json

import pytest

from log import clear_request_id, get_request_id, log, mask_secret, set_request_id


@pytest.fixture
def json_log(monkeypatch):
    monkeypatch.setenv("LOG_FORMAT", "json")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("LOG_FILE", "")
    yield
    clear_request_id()


class TestLogger:
    """测试 JSON 输出、凭据打码与 request_id"""

    def test_json_line_masks_secrets(self, json_log, capsys):
        set_request_id("req-1")
        log.route("/chat-stream -> byok", tag="ROUTER", provider="p1", api_key="sk-abcdef123456")

        entry = json.loads(capsys.readouterr().out.strip())
        assert entry["level"] == "ROUTE"
        assert entry["tag"] == "ROUTER"
        assert entry["api_key"] == "***3456"
        assert entry["provider"] == "p1"
        assert entry["request_id"] == "req-1"

    def test_level_threshold(self, json_log, monkeypatch, capsys):
        monkeypatch.setenv("LOG_LEVEL", "warning")
        log.info("hidden")
        log.error("shown")

        captured = capsys.readouterr()
        assert captured.out == ""
        assert json.loads(captured.err)["message"] == "shown"

    def test_timer_logs_failure(self, json_log, capsys):
        with pytest.raises(ValueError):
            with log.timer("probe", tag="SELFTEST"):
                raise ValueError("x")

        entry = json.loads(capsys.readouterr().out.strip())
        assert entry["level"] == "PERF"
        assert entry["message"].startswith("probe FAIL (")

    def test_request_id(self):
        rid = set_request_id("")
        assert len(rid) == 8
        assert get_request_id() == rid
        clear_request_id()
        assert get_request_id() is None

    def test_mask_secret(self):
        assert mask_secret("short") == "***"
        assert mask_secret(None) == "***"
