"""Tests for channel senders and the HTTP client."""
import base64
import hashlib
import hmac
import json
import pytest
import requests
from unittest.mock import patch, MagicMock

from alerts.channels import (
    ConsoleChannel, FileChannel, WebhookChannel, SlackChannel, DingTalkChannel,
    SMSChannel, NotificationChannel, build_channels, dingtalk_sign,
)
from utils.errors import DeliveryError
from utils.http_client import HTTPClient


def _response(status=200, text='{"ok": true}'):
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    return resp


class TestHTTPClient:
    def test_success_returns_body(self):
        with patch("requests.Session.request", return_value=_response(204, "")) as req:
            assert HTTPClient(timeout=3).post_json("http://hook", {"a": 1}) == ""
        assert req.call_args.kwargs["json"] == {"a": 1}
        assert req.call_args.kwargs["timeout"] == 3

    def test_http_error(self):
        with patch("requests.Session.request", return_value=_response(500, "boom" * 500)):
            with pytest.raises(DeliveryError) as exc:
                HTTPClient(channel="webhook").post_json("http://hook", {})
        assert exc.value.status_code == 500
        assert exc.value.channel == "webhook"
        assert len(exc.value.response_body) == 1000

    def test_transport_error(self):
        with patch("requests.Session.request", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(DeliveryError, match="refused"):
                HTTPClient().post_json("http://hook", {})

    def test_missing_url(self):
        with pytest.raises(DeliveryError):
            HTTPClient().post_json("", {})


class TestLocalChannels:
    def test_console(self):
        console = MagicMock()
        ConsoleChannel(console=console).send("", "[CRITICAL] Disk", "details")
        assert "[CRITICAL] Disk" in console.print.call_args_list[0].args[0]

    def test_file_appends_jsonl(self, tmp_path):
        path = tmp_path / "out" / "n.jsonl"
        channel = FileChannel(str(path))
        channel.send("ops", "s1", "c1")
        channel.send("ops", "s2", "c2")
        lines = [json.loads(l) for l in path.read_text().splitlines()]
        assert [l["subject"] for l in lines] == ["s1", "s2"]

    def test_file_error_raises(self, tmp_path):
        channel = FileChannel(str(tmp_path))  # a directory cannot be opened for append
        with pytest.raises(DeliveryError):
            channel.send("", "s", "c")

    def test_protocol(self, tmp_path):
        assert isinstance(FileChannel(str(tmp_path / "x")), NotificationChannel)


class TestHTTPChannels:
    def test_webhook_payload_and_method(self):
        channel = WebhookChannel("http://hook", method="put", headers={"X-Token": "t"})
        with patch("requests.Session.request", return_value=_response()) as req:
            channel.send("team-a", "subj", "body")
        method, url = req.call_args.args
        assert (method, url) == ("PUT", "http://hook")
        payload = req.call_args.kwargs["json"]
        assert payload["subject"] == "subj"
        assert payload["recipient"] == "team-a"
        assert channel.client.session.headers["X-Token"] == "t"

    def test_slack_recipient_overrides_channel(self):
        channel = SlackChannel("http://slack", channel="#general")
        with patch("requests.Session.request", return_value=_response(200, "ok")) as req:
            channel.send("#ops", "[WARNING] CPU", "hot")
            channel.send("", "[WARNING] CPU", "hot")
        first, second = [c.kwargs["json"] for c in req.call_args_list]
        assert first["channel"] == "#ops"
        assert second["channel"] == "#general"
        assert first["icon_emoji"] == ":warning:"
        assert first["text"].startswith("*[WARNING] CPU*")

    def test_dingtalk_signature(self):
        expected = base64.b64encode(hmac.new(
            b"sec", b"1700000000000\nsec", hashlib.sha256).digest()).decode()
        assert dingtalk_sign("sec", 1700000000000) == expected

    def test_dingtalk_signed_request(self):
        channel = DingTalkChannel("https://oapi.dingtalk.com/robot/send?access_token=x", secret="sec")
        with patch("requests.Session.request", return_value=_response(200, '{"errcode": 0}')) as req:
            channel.send("13800000000, 13900000000", "s", "c")
        params = req.call_args.kwargs["params"]
        assert set(params) == {"timestamp", "sign"}
        payload = req.call_args.kwargs["json"]
        assert payload["at"]["atMobiles"] == ["13800000000", "13900000000"]
        assert payload["text"]["content"] == "s\nc"

    def test_dingtalk_api_error(self):
        channel = DingTalkChannel("https://oapi.dingtalk.com/robot/send?access_token=x")
        body = '{"errcode": 310000, "errmsg": "sign not match"}'
        with patch("requests.Session.request", return_value=_response(200, body)):
            with pytest.raises(DeliveryError, match="310000"):
                channel.send("", "s", "c")

    def test_sms_requires_recipient(self):
        with pytest.raises(DeliveryError):
            SMSChannel("http://sms").send("", "s", "c")

    def test_sms_truncates(self):
        channel = SMSChannel("http://sms", api_key="k", max_length=20)
        with patch("requests.Session.request", return_value=_response()) as req:
            channel.send("+15550100", "subject", "x" * 100)
        assert len(req.call_args.kwargs["json"]["message"]) == 20
        assert channel.client.session.headers["Authorization"] == "Bearer k"


def test_build_channels_enabled_only(tmp_path):
    cfg = {"channels": {
        "console": {"enabled": True},
        "file": {"enabled": True, "path": str(tmp_path / "n.jsonl")},
        "slack": {"enabled": False, "webhook_url": "http://slack"},
        "webhook": {"enabled": True, "url": "http://hook", "timeout_seconds": 4},
    }}
    channels = build_channels(cfg)
    assert sorted(channels) == ["console", "file", "webhook"]
    assert channels["webhook"].timeout == 4
    assert all(name == ch.name for name, ch in channels.items())
