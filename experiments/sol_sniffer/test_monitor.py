from decimal import Decimal

import pytest

import monitor
import settings

ADDRESS = "So11111111111111111111111111111111111111112"


def test_trace_arguments():
    args = monitor.build_parser().parse_args(["trace", ADDRESS, "--min", "0.5", "--depth", "4"])
    assert args.mode == "trace"
    assert args.min_amount == Decimal("0.5")
    assert args.max_amount == Decimal("100")
    assert args.depth == 4


def test_backtrace_default_depth():
    args = monitor.build_parser().parse_args(["backtrace", ADDRESS])
    assert args.depth == 5


@pytest.mark.parametrize("argv", [
    ["trace", "short"],
    ["trace", ADDRESS, "--depth", "0"],
    ["copytrade"],
    [],
])
def test_rejected_arguments(argv):
    with pytest.raises(SystemExit):
        monitor.build_parser().parse_args(argv)


def test_inverted_range_exits_before_loading_settings(monkeypatch):
    def fail():
        raise AssertionError("settings should not be loaded")

    monkeypatch.setattr(monitor, "load_settings", fail)
    assert monitor.main(["trace", ADDRESS, "--min", "5", "--max", "1"]) == 2


def test_configuration_error_exit_code(monkeypatch):
    def broken():
        raise monitor.ConfigError("Missing required environment variables: HELIUS_API_KEY")

    monkeypatch.setattr(monitor, "load_settings", broken)
    assert monitor.main(["snipe"]) == 2


def test_zero_rate_window_is_a_configuration_error(monkeypatch):
    monkeypatch.setattr(monitor, "load_settings", lambda: settings.load_settings({"HELIUS_API_KEY": "k", "RATE_WINDOW_SEC": "0"}))
    assert monitor.main(["snipe"]) == 2
