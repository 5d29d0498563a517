"""
Alert delivery and deduplication for rebalancing notifications.

Verifies:
1. Identical alerts inside the dedupe window are suppressed
2. Dedupe expires and allows re-notification
3. Severity floor filters low-priority alerts
4. Webhook failures are logged, not raised
5. Dry run never touches the network
"""

import urllib.error
from unittest.mock import MagicMock, Mock, patch

import pytest

from infra.alerting import AlertConfig, AlertService, AlertSeverity


@pytest.fixture
def alert_config():
    return AlertConfig(
        enabled=True,
        webhook_url="https://test.webhook.com/alert",
        min_severity=AlertSeverity.INFO,
        dry_run=False,
        timeout=5.0,
        dedupe_seconds=60.0,
    )


@pytest.fixture
def mock_urllib():
    with patch("infra.alerting.urllib.request.urlopen") as mock_urlopen:
        mock_response = MagicMock()
        mock_response.status = 200
        mock_response.__enter__ = Mock(return_value=mock_response)
        mock_response.__exit__ = Mock(return_value=False)
        mock_urlopen.return_value = mock_response
        yield mock_urlopen


def test_alert_sent_to_webhook(alert_config, mock_urllib):
    service = AlertService(alert_config)

    assert service.notify(AlertSeverity.INFO, "Vault rebalanced (soft)", "3 transaction(s) confirmed",
                          {"attempt_id": "abc"})

    request = mock_urllib.call_args[0][0]
    assert request.full_url == "https://test.webhook.com/alert"
    assert b"[INFO] Vault rebalanced (soft)" in request.data
    assert b"attempt_id" in request.data


def test_identical_alerts_deduped_then_expire(alert_config, mock_urllib):
    service = AlertService(alert_config)

    with patch("infra.alerting.time.monotonic", side_effect=[0.0, 30.0, 61.0]):
        assert service.notify(AlertSeverity.WARNING, "halted", "swap failed")
        assert not service.notify(AlertSeverity.WARNING, "halted", "swap failed")
        assert service.notify(AlertSeverity.WARNING, "halted", "swap failed")

    assert mock_urllib.call_count == 2


def test_different_messages_not_deduped(alert_config, mock_urllib):
    service = AlertService(alert_config)
    assert service.notify(AlertSeverity.WARNING, "halted", "swap WETH failed")
    assert service.notify(AlertSeverity.WARNING, "halted", "swap WBTC failed")
    assert mock_urllib.call_count == 2


def test_min_severity_filters(alert_config, mock_urllib):
    alert_config.min_severity = AlertSeverity.WARNING
    service = AlertService(alert_config)

    assert not service.notify(AlertSeverity.INFO, "rebalanced", "ok")
    assert service.notify(AlertSeverity.CRITICAL, "oracle down", "no readings")
    assert [h["severity"] for h in service.history()] == ["CRITICAL"]


def test_webhook_failure_is_swallowed(alert_config, mock_urllib):
    mock_urllib.side_effect = urllib.error.URLError("unreachable")
    service = AlertService(alert_config)

    assert service.notify(AlertSeverity.WARNING, "halted", "deposit timed out")
    assert len(service.history()) == 1


def test_dry_run_does_not_call_webhook(mock_urllib):
    service = AlertService(AlertConfig(
        enabled=True, webhook_url=None, min_severity=AlertSeverity.INFO, dry_run=True,
    ))
    assert service.is_enabled()
    assert service.notify(AlertSeverity.INFO, "rebalanced", "ok")
    mock_urllib.assert_not_called()


def test_enabled_without_webhook_disables(mock_urllib):
    service = AlertService(AlertConfig(
        enabled=True, webhook_url=None, min_severity=AlertSeverity.INFO, dry_run=False,
    ))
    assert not service.is_enabled()
    assert not service.notify(AlertSeverity.CRITICAL, "x", "y")


def test_from_config_reads_webhook_env(monkeypatch):
    monkeypatch.setenv("MY_HOOK", "https://hooks.example/abc")
    service = AlertService.from_config(True, {"webhook_env": "MY_HOOK", "min_severity": "warning"})

    assert service.is_enabled()
    assert service._config.webhook_url == "https://hooks.example/abc"
    assert service._config.min_severity is AlertSeverity.WARNING


def test_severity_from_string_defaults():
    assert AlertSeverity.from_string("critical") is AlertSeverity.CRITICAL
    assert AlertSeverity.from_string("bogus") is AlertSeverity.WARNING
    assert AlertSeverity.from_string("", default=AlertSeverity.INFO) is AlertSeverity.INFO
