from unittest.mock import patch

from structured_completion import metrics


def test_maybe_start_metrics_disabled_does_not_bind():
    with patch.object(metrics, "start_http_server") as start:
        metrics.maybe_start_metrics(enable=False, bind="127.0.0.1", port=9109)
    start.assert_not_called()


def test_maybe_start_metrics_enabled_binds_configured_address():
    with patch.object(metrics, "start_http_server") as start:
        metrics.maybe_start_metrics(enable=True, bind="127.0.0.1", port=9109)
    start.assert_called_once_with(9109, addr="127.0.0.1")
