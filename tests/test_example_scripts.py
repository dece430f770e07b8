import importlib
import sys
from pathlib import Path
from unittest import mock


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "API"))


def test_report_scripts_are_import_safe():
    # Importing a report script must not parse argv, touch the network, or exit.
    for name in ("dashboards_report", "audit_logs_report"):
        mod = importlib.import_module(name)
        assert hasattr(mod, "main")


def test_dashboards_report_delegates_to_cli():
    import dashboards_report

    with mock.patch("dtapi_cli.main", autospec=True, return_value=0) as main_mock:
        assert dashboards_report.main(["-s", "-o", "out.csv"]) == 0

    main_mock.assert_called_once_with(["dashboards", "-s", "-o", "out.csv"])


def test_audit_logs_report_delegates_to_cli_with_sys_argv(monkeypatch):
    import audit_logs_report

    monkeypatch.setattr(sys, "argv", ["audit_logs_report.py", "--from", "now-1d"])
    with mock.patch("dtapi_cli.main", autospec=True, return_value=3) as main_mock:
        assert audit_logs_report.main() == 3

    main_mock.assert_called_once_with(["audit-logs", "--from", "now-1d"])
