import csv
import json
import sys
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "API"))

import dtapi  # noqa: E402
import dtapi_cli  # noqa: E402


BASE = "https://managed.example.com/e/prod-env"


class Resp:
    def __init__(self, status_code, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    def json(self):
        return self._payload


def _clear_env(monkeypatch, tmp_path):
    for k in (dtapi_cli.ENV_URL_VAR, dtapi_cli.TOKEN_VAR):
        monkeypatch.setenv(k, "")
        monkeypatch.delenv(k)
    monkeypatch.chdir(tmp_path)


def _audit_session(version="1.214.0.20210401", scopes=("auditLogs.read",)):
    calls = []
    pages = [
        {
            "totalCount": 3,
            "pageSize": 2,
            "nextPageKey": "AQAAABQBAAAABQ==",
            "auditLogs": [
                {
                    "logId": "3",
                    "eventType": "UPDATE",
                    "category": "CONFIG",
                    "entityId": "DASHBOARD: d-1",
                    "environmentId": "prod-env",
                    "user": "jane@example.com",
                    "userType": "USER_NAME",
                    "userOrigin": "webui (10.0.0.1)",
                    "timestamp": 1700000300000,
                    "success": True,
                    "origin": "10.0.0.1",
                },
                {
                    "logId": "1",
                    "eventType": "LOGIN",
                    "category": "WEB_UI",
                    "user": "bob@example.com",
                    "timestamp": 1700000100000,
                    "success": False,
                },
            ],
        },
        {
            "totalCount": 3,
            "pageSize": 2,
            "auditLogs": [
                {
                    "logId": "2",
                    "eventType": "CREATE",
                    "category": "TOKEN",
                    "user": "ci-token",
                    "userType": "TOKEN_HASH",
                    "timestamp": 1700000200000,
                    "success": True,
                }
            ],
        },
    ]

    class AuditSession:
        def __init__(self):
            self.calls = calls

        def request(self, **kwargs):
            calls.append(kwargs)
            path = kwargs["url"][len(BASE) :]
            if path == "/api/v1/config/clusterversion":
                return Resp(200, {"version": version})
            if path == "/api/v1/tokens/lookup":
                return Resp(200, {"scopes": list(scopes)})
            if path == "/api/v2/auditlogs":
                page_no = sum(1 for c in calls if c["url"].endswith("/api/v2/auditlogs")) - 1
                return Resp(200, pages[page_no])
            return Resp(404, {"error": {"code": 404}})

    return AuditSession()


def test_cli_audit_logs_pages_and_sorts_by_timestamp(monkeypatch, tmp_path, capsys):
    _clear_env(monkeypatch, tmp_path)
    session = _audit_session()
    monkeypatch.setattr(dtapi.requests, "Session", lambda: session)

    rc = dtapi_cli.main(
        [
            "audit-logs",
            "-e",
            BASE + "/",
            "-t",
            "tok",
            "--from",
            "now-1d",
            "--filter",
            'eventType("UPDATE")',
            "--page-size",
            "2",
            "--format",
            "json",
        ]
    )
    assert rc == 0

    out = json.loads(capsys.readouterr().out)
    assert [r["logId"] for r in out] == ["1", "2", "3"]
    assert out[0]["timestamp"] == "2023-11-14T22:15:00.000Z"
    assert out[2]["entityId"] == "DASHBOARD: d-1"

    audit_calls = [c for c in session.calls if c["url"].endswith("/api/v2/auditlogs")]
    assert audit_calls[0]["params"] == {
        "from": "now-1d",
        "pageSize": 2,
        "filter": 'eventType("UPDATE")',
    }
    assert audit_calls[1]["params"] == {"nextPageKey": "AQAAABQBAAAABQ=="}


def test_cli_audit_logs_sort_is_sent_on_first_page_only(monkeypatch, tmp_path, capsys):
    _clear_env(monkeypatch, tmp_path)
    session = _audit_session()
    monkeypatch.setattr(dtapi.requests, "Session", lambda: session)

    rc = dtapi_cli.main(
        ["audit-logs", "-e", BASE, "-t", "tok", "--sort=-timestamp", "--format", "json"]
    )
    assert rc == 0

    # Output order stays ascending whatever order the pages arrive in.
    out = json.loads(capsys.readouterr().out)
    assert [r["logId"] for r in out] == ["1", "2", "3"]

    audit_calls = [c for c in session.calls if c["url"].endswith("/api/v2/auditlogs")]
    assert audit_calls[0]["params"] == {"from": "now-2h", "pageSize": 1000, "sort": "-timestamp"}
    assert audit_calls[1]["params"] == {"nextPageKey": "AQAAABQBAAAABQ=="}


def test_cli_audit_logs_rejects_unknown_sort(monkeypatch, tmp_path, capsys):
    _clear_env(monkeypatch, tmp_path)
    with pytest.raises(SystemExit) as exc:
        dtapi_cli.main(["audit-logs", "-e", BASE, "-t", "tok", "--sort", "user"])
    assert exc.value.code == 2


def test_cli_audit_logs_requires_newer_version(monkeypatch, tmp_path, capsys):
    _clear_env(monkeypatch, tmp_path)
    monkeypatch.setattr(dtapi.requests, "Session", lambda: _audit_session(version="1.190.0"))

    rc = dtapi_cli.main(["audit-logs", "-e", BASE, "-t", "tok"])
    assert rc == 3
    err = capsys.readouterr().err
    assert "1.190" in err
    assert "1.208" in err


def test_cli_audit_logs_requires_audit_scope(monkeypatch, tmp_path, capsys):
    _clear_env(monkeypatch, tmp_path)
    monkeypatch.setattr(
        dtapi.requests, "Session", lambda: _audit_session(scopes=("ReadConfig", "DataExport"))
    )

    rc = dtapi_cli.main(["audit-logs", "-e", BASE, "-t", "tok"])
    assert rc == 3
    assert "auditLogs.read" in capsys.readouterr().err


def test_cli_audit_logs_short_csv(monkeypatch, tmp_path):
    _clear_env(monkeypatch, tmp_path)
    monkeypatch.setattr(dtapi.requests, "Session", lambda: _audit_session())
    out = tmp_path / "audit" / "audit.csv"

    rc = dtapi_cli.main(["audit-logs", "-e", BASE, "-t", "tok", "-s", "-o", str(out)])
    assert rc == 0

    with out.open(encoding="utf-8", newline="") as fh:
        reader = csv.DictReader(fh)
        rows = list(reader)
    assert reader.fieldnames == dtapi.AUDIT_LOG_SHORT_COLUMNS
    assert [r["user"] for r in rows] == ["bob@example.com", "ci-token", "jane@example.com"]
