"""Tests for PeriodicExporter: lifecycle, one-shot export, failure handling."""

import base64
import json
import threading
from unittest.mock import MagicMock, patch

import pytest
import requests

from pizza_telemetry import __version__
from pizza_telemetry.observability.encoders import LineProtocolEncoder, OtlpJsonEncoder
from pizza_telemetry.observability.exporter import PeriodicExporter, basic_authorization

URL = "http://metrics.test/otlp/v1/metrics"
KEY = "12345:glc_metrics_key"


@pytest.fixture
def make_exporter(aggregator, operator_log):
    created = []

    def _make(url=URL, api_key=KEY, **kwargs):
        kwargs.setdefault("logger", operator_log)
        kwargs.setdefault("autostart", False)
        exporter = PeriodicExporter(
            aggregator, OtlpJsonEncoder("test-source"), url, api_key, **kwargs
        )
        created.append(exporter)
        return exporter

    yield _make
    for exporter in created:
        exporter.stop()


# ── lifecycle ────────────────────────────────────────────────────


class TestLifecycle:
    def test_autostarts_when_configured(self, make_exporter):
        exporter = make_exporter(autostart=True, interval_seconds=60)
        assert exporter.is_running

    @pytest.mark.parametrize("url,key", [(None, KEY), (URL, None), ("", ""), (None, None)])
    def test_stays_idle_without_url_or_key(self, make_exporter, url, key):
        exporter = make_exporter(url=url, api_key=key, autostart=True)
        assert not exporter.is_running
        assert exporter.start() is False

    def test_stop_never_started_is_noop(self, make_exporter):
        exporter = make_exporter(url=None, api_key=None)
        exporter.stop()
        exporter.stop()
        assert not exporter.is_running

    def test_stop_is_idempotent(self, make_exporter):
        exporter = make_exporter(interval_seconds=60)
        assert exporter.start() is True
        exporter.stop()
        exporter.stop()
        assert not exporter.is_running

    def test_start_twice_keeps_one_timer(self, make_exporter):
        exporter = make_exporter(interval_seconds=60)
        assert exporter.start() is True
        thread = exporter._thread
        assert exporter.start() is False
        assert exporter._thread is thread

    def test_restart_after_stop(self, make_exporter):
        exporter = make_exporter(interval_seconds=60)
        exporter.start()
        exporter.stop()
        assert exporter.start() is True
        assert exporter.is_running

    @patch("requests.post")
    def test_ticks_post_repeatedly(self, mock_post, make_exporter, ok_response):
        calls = []
        done = threading.Event()

        def fake_post(*args, **kwargs):
            calls.append(kwargs)
            if len(calls) >= 2:
                done.set()
            return ok_response

        mock_post.side_effect = fake_post
        exporter = make_exporter(interval_seconds=0.01)
        exporter.start()
        assert done.wait(5)
        exporter.stop()
        assert len(calls) >= 2

    @patch("requests.post")
    def test_failing_ticks_do_not_stop_the_timer(self, mock_post, make_exporter):
        done = threading.Event()

        def fake_post(*args, **kwargs):
            if mock_post.call_count >= 3:
                done.set()
            raise requests.ConnectionError("collector down")

        mock_post.side_effect = fake_post
        exporter = make_exporter(interval_seconds=0.01)
        exporter.start()
        assert done.wait(5)
        assert exporter.is_running
        exporter.stop()

    @patch("requests.post")
    def test_unexpected_tick_error_is_logged(self, mock_post, make_exporter, operator_log):
        done = threading.Event()
        exporter = make_exporter(interval_seconds=0.01)

        def boom(snapshot):
            done.set()
            raise RuntimeError("encoder bug")

        exporter.encoder = MagicMock(content_type="application/json")
        exporter.encoder.encode.side_effect = boom
        exporter.start()
        assert done.wait(5)
        exporter.stop()
        assert operator_log.exception.called


# ── export_once ──────────────────────────────────────────────────


class TestExportOnce:
    @patch("requests.post")
    def test_posts_encoded_snapshot(self, mock_post, make_exporter, aggregator, ok_response):
        mock_post.return_value = ok_response
        aggregator.record_request_start("GET", "/api/order").finish(200)

        assert make_exporter().export_once() is True

        args, kwargs = mock_post.call_args
        assert args == (URL,)
        assert kwargs["headers"]["Content-Type"] == "application/json"
        assert kwargs["timeout"] > 0
        doc = json.loads(kwargs["data"])
        names = {m["name"] for m in doc["resourceMetrics"][0]["scopeMetrics"][0]["metrics"]}
        assert "http_request_count_total" in names

    @patch("requests.post")
    def test_basic_authorization_header(self, mock_post, make_exporter, ok_response):
        mock_post.return_value = ok_response
        make_exporter().export_once()
        header = mock_post.call_args.kwargs["headers"]["Authorization"]
        scheme, encoded = header.split(" ")
        assert scheme == "Basic"
        assert base64.b64decode(encoded).decode() == KEY

    @patch("requests.post")
    def test_user_agent_header(self, mock_post, make_exporter, ok_response):
        mock_post.return_value = ok_response
        make_exporter().export_once()
        agent = mock_post.call_args.kwargs["headers"]["User-Agent"]
        assert agent == f"pizza-telemetry/{__version__}"

    @patch("requests.post")
    def test_uses_encoder_content_type(self, mock_post, aggregator, operator_log, ok_response):
        mock_post.return_value = ok_response
        exporter = PeriodicExporter(
            aggregator, LineProtocolEncoder("svc"), URL, KEY, logger=operator_log, autostart=False
        )
        exporter.export_once()
        kwargs = mock_post.call_args.kwargs
        assert kwargs["headers"]["Content-Type"].startswith("text/plain")
        assert "http_requests_total,source=svc" in kwargs["data"]

    @patch("requests.post")
    def test_export_drains_latencies(self, mock_post, make_exporter, aggregator, ok_response):
        mock_post.return_value = ok_response
        aggregator.record_purchase(True, 150, 1, 10.0)
        exporter = make_exporter()

        exporter.export_once()
        first = mock_post.call_args.kwargs["data"]
        exporter.export_once()
        second = mock_post.call_args.kwargs["data"]

        assert "pizza_purchase_duration_ms" in first
        assert "pizza_purchase_duration_ms" not in second

    @patch("requests.post")
    def test_non_2xx_is_logged_not_raised(
        self, mock_post, make_exporter, error_response, operator_log
    ):
        mock_post.return_value = error_response
        assert make_exporter().export_once() is False
        assert operator_log.error.call_count == 1
        assert 401 in operator_log.error.call_args.args

    @patch("requests.post")
    def test_connection_error_is_logged_not_raised(self, mock_post, make_exporter, operator_log):
        mock_post.side_effect = requests.ConnectionError("refused")
        assert make_exporter().export_once() is False
        assert operator_log.error.call_count == 1

    @patch("requests.post")
    def test_timeout_is_logged_not_raised(self, mock_post, make_exporter, operator_log):
        mock_post.side_effect = requests.Timeout("slow")
        assert make_exporter().export_once() is False
        assert operator_log.error.call_count == 1

    @patch("requests.post")
    def test_encoder_failure_is_logged_not_raised(self, mock_post, make_exporter, operator_log):
        exporter = make_exporter()
        exporter.encoder = MagicMock(content_type="application/json")
        exporter.encoder.encode.side_effect = TypeError("unserializable gauge")

        assert exporter.export_once() is False
        mock_post.assert_not_called()
        assert operator_log.exception.call_count == 1

    @patch("requests.post")
    def test_unconfigured_export_skips(self, mock_post, make_exporter, operator_log):
        assert make_exporter(url=None, api_key=None).export_once() is False
        mock_post.assert_not_called()
        assert operator_log.error.call_count == 0


def test_basic_authorization_encoding():
    assert basic_authorization("user:pass") == "Basic dXNlcjpwYXNz"
