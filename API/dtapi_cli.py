#!/usr/bin/python3
import argparse
import csv
import json
import logging
import math
import os
import sys
import tempfile
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path

from dotenv import find_dotenv, load_dotenv
from tabulate import tabulate

ENV_URL_VAR = "DT_ENV_URL"
TOKEN_VAR = "DT_API_TOKEN"

_EXIT_OK = 0
_EXIT_API_ERROR = 1
_EXIT_USAGE = 2
_EXIT_INCOMPATIBLE = 3


def _parse_http_timeout(value: str) -> tuple[float, float]:
    """
    Parse `--http-timeout` as either:
      - "read" (seconds) -> (10, read)
      - "connect,read" (seconds) -> (connect, read)
    """
    raw = (value or "").strip()
    if not raw:
        raise ValueError("empty timeout")

    if "," in raw:
        parts = [p.strip() for p in raw.split(",", 1)]
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ValueError(f"invalid timeout format: {value!r}")
        connect_s = float(parts[0])
        read_s = float(parts[1])
    else:
        connect_s = 10.0
        read_s = float(raw)

    if not math.isfinite(connect_s) or not math.isfinite(read_s):
        raise ValueError("timeouts must be finite")
    if connect_s <= 0 or read_s <= 0:
        raise ValueError("timeouts must be > 0")
    return (connect_s, read_s)


def _parse_scopes_arg(value: str) -> list[str]:
    out: list[str] = []
    for part in (value or "").split(","):
        scope = part.strip()
        if scope and scope not in out:
            out.append(scope)
    return out


def _cli_version() -> str:
    # Prefer the installed distribution version, but fall back to the helper's `_VERSION`
    # when running directly from a checkout.
    try:
        return pkg_version("dtapi-reports")
    except PackageNotFoundError:
        import dtapi

        return str(getattr(dtapi, "_VERSION", "unknown"))


def _resolve_cli_log_level(args) -> str | None:
    if getattr(args, "log_level", ""):
        return args.log_level
    if getattr(args, "verbose", 0) >= 2:
        return "DEBUG"
    if getattr(args, "verbose", 0) == 1:
        return "INFO"
    return None


def _resolve_out_path(value: str) -> Path | None:
    if not value or value == "-":
        return None
    return Path(value)


def _atomic_open_text(path: Path, *, encoding: str = "utf-8", newline: str | None = None):
    """
    Open a temp file handle for atomic writes. Caller must write/close, then we replace `path`.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fh = tempfile.NamedTemporaryFile(
        mode="w",
        encoding=encoding,
        newline=newline,
        delete=False,
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    return tmp_fh, Path(tmp_fh.name)


def _atomic_write(path: Path, write_fn, *, newline: str | None = None) -> None:
    """
    Write through `write_fn(fh)` into a temp file next to `path`, then replace `path`.

    This avoids leaving partially-written output files if the process is interrupted mid-write.
    """
    tmp_fh, tmp_path = _atomic_open_text(path, encoding="utf-8", newline=newline)
    try:
        with tmp_fh:
            write_fn(tmp_fh)
            tmp_fh.flush()
            try:
                os.fsync(tmp_fh.fileno())
            except OSError:
                # Some filesystems may not support fsync; atomic replace still helps.
                pass
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _write_json(path: Path | None, payload) -> None:
    data = json.dumps(payload, indent=2, sort_keys=True)
    if path is None:
        sys.stdout.write(data + "\n")
    else:
        _atomic_write(path, lambda fh: fh.write(data + "\n"), newline="\n")


def _write_lines(path: Path | None, lines: list[str]) -> None:
    data = "".join(f"{line}\n" for line in lines)
    if path is None:
        sys.stdout.write(data)
    else:
        _atomic_write(path, lambda fh: fh.write(data), newline="\n")


def _write_csv(path: Path | None, rows: list[dict], *, columns: list[str]) -> None:
    # Projected records are flat scalars; ruleTypes is already joined.
    def write_rows(out_fh) -> None:
        writer = csv.DictWriter(out_fh, fieldnames=list(columns), extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)

    if path is None:
        write_rows(sys.stdout)
        return
    _atomic_write(path, write_rows, newline="")


def _write_table(path: Path | None, rows: list[dict], *, columns: list[str]) -> None:
    table = [[row.get(c, "") for c in columns] for row in rows]
    # Names and ids are strings; "1.10" or "0042" must print as-is.
    text = tabulate(table, headers=columns, tablefmt="simple", disable_numparse=True)
    _write_lines(path, [text])


def _add_logging_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (repeatable; maps to INFO/DEBUG)",
    )
    p.add_argument(
        "--log-level",
        default="",
        help="Set log level (DEBUG/INFO/WARNING/ERROR/CRITICAL). Overrides -v/--verbose.",
    )


def _add_connection_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "-e",
        "--env-url",
        default="",
        help=f"Tenant URL, e.g. abc12345.live.dynatrace.com (default: env {ENV_URL_VAR})",
    )
    p.add_argument(
        "-t",
        "--token",
        default="",
        help=f"API token (default: env {TOKEN_VAR})",
    )
    p.add_argument(
        "-k",
        "--insecure",
        action="store_true",
        help="Skip TLS certificate verification (self-signed Managed clusters)",
    )
    p.add_argument(
        "--http-timeout",
        type=_parse_http_timeout,
        default=None,
        help="HTTP timeouts in seconds: 'read' or 'connect,read' (default: 10,60)",
    )
    p.add_argument(
        "--min-version",
        type=int,
        default=None,
        help="Minimum environment version minor number, e.g. 176 for 1.176 (default: per report)",
    )


def _add_report_args(p: argparse.ArgumentParser) -> None:
    _add_connection_args(p)
    p.add_argument(
        "-o",
        "--out",
        default="",
        help="Output path; parent directories are created (default: stdout)",
    )
    p.add_argument(
        "--format",
        choices=["table", "csv", "json"],
        default=None,
        help="Output format (default: table on stdout, csv with --out)",
    )
    p.add_argument(
        "-s",
        "--short",
        action="store_true",
        help="Only emit the identifying columns",
    )
    p.add_argument(
        "--skip-checks",
        action="store_true",
        help="Skip the pre-flight environment/version/token-scope checks",
    )
    p.add_argument(
        "--skip-failed-details",
        action="store_true",
        help="Log and skip items whose detail fetch fails (default: abort the run)",
    )
    _add_logging_args(p)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Reports over a Dynatrace tenant's REST API (dashboards, management zones, audit logs).",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {_cli_version()}")
    sub = p.add_subparsers(dest="cmd", required=True)

    doctor = sub.add_parser("doctor", help="Configuration/compatibility sanity checks")
    doctor.add_argument(
        "--format",
        choices=["json", "text"],
        default="json",
        help="Output format (default: json)",
    )
    doctor.add_argument("--out", default="", help="Output path (default: stdout)")
    doctor.add_argument(
        "--probe",
        action="store_true",
        help="Run the compatibility checks against the environment (2 API calls)",
    )
    doctor.add_argument(
        "--scopes",
        default="ReadConfig",
        help="Comma-separated token scopes to require when probing (default: ReadConfig)",
    )
    _add_connection_args(doctor)
    _add_logging_args(doctor)

    dashboards = sub.add_parser("dashboards", help="Dashboard inventory (owner, sharing, tiles)")
    _add_report_args(dashboards)

    zones = sub.add_parser("management-zones", help="Management zone inventory (rule counts)")
    _add_report_args(zones)

    audit = sub.add_parser("audit-logs", help="Audit log entries for a timeframe")
    _add_report_args(audit)
    audit.add_argument(
        "--from",
        dest="from_",
        default="now-2h",
        help="Start of the timeframe (default: now-2h)",
    )
    audit.add_argument("--to", default="", help="End of the timeframe (default: now)")
    audit.add_argument("--filter", default="", help="Optional audit log filter expression")
    audit.add_argument(
        "--sort",
        choices=["timestamp", "-timestamp"],
        default="",
        help="Server-side page order, e.g. --sort=-timestamp (output is always sorted by timestamp)",
    )
    audit.add_argument(
        "--page-size",
        type=int,
        default=1000,
        help="Entries requested per page (default: 1000)",
    )

    return p


def _collect_dashboards(dtapi, env, args) -> tuple[list[dict], list[str]]:
    details = dtapi.fetch_details(
        env,
        dtapi.DASHBOARDS_PATH,
        dtapi.DASHBOARD_PATH,
        list_key="dashboards",
        on_error="skip" if args.skip_failed_details else "abort",
    )
    columns = dtapi.DASHBOARD_SHORT_COLUMNS if args.short else dtapi.DASHBOARD_COLUMNS
    return [dtapi.project_dashboard(d, short=args.short) for d in details], list(columns)


def _collect_management_zones(dtapi, env, args) -> tuple[list[dict], list[str]]:
    details = dtapi.fetch_details(
        env,
        dtapi.MANAGEMENT_ZONES_PATH,
        dtapi.MANAGEMENT_ZONE_PATH,
        list_key="values",
        on_error="skip" if args.skip_failed_details else "abort",
    )
    columns = dtapi.MANAGEMENT_ZONE_SHORT_COLUMNS if args.short else dtapi.MANAGEMENT_ZONE_COLUMNS
    return [dtapi.project_management_zone(d, short=args.short) for d in details], list(columns)


def _collect_audit_logs(dtapi, env, args) -> tuple[list[dict], list[str]]:
    entries = dtapi.iter_audit_logs(
        env,
        from_=args.from_,
        to=args.to,
        filter_expr=args.filter,
        sort=args.sort,
        page_size=args.page_size,
    )
    columns = dtapi.AUDIT_LOG_SHORT_COLUMNS if args.short else dtapi.AUDIT_LOG_COLUMNS
    return [dtapi.project_audit_log(e, short=args.short) for e in entries], list(columns)


# cmd -> (collect fn returning (records, columns), required scopes, default min version, sort keys)
_REPORTS = {
    "dashboards": (_collect_dashboards, ("ReadConfig",), 176, ("owner", "name")),
    "management-zones": (_collect_management_zones, ("ReadConfig",), 176, ("name", "id")),
    "audit-logs": (_collect_audit_logs, ("auditLogs.read",), 208, ("timestamp",)),
}


def _load_dotenv() -> Path | None:
    # Search upward from the CWD, not from this module's location.
    found = find_dotenv(usecwd=True)
    if not found:
        return None
    # Real environment variables win over the file.
    load_dotenv(found, override=False)
    return Path(found).resolve()


def _build_environment(dtapi, args):
    url = (args.env_url or os.getenv(ENV_URL_VAR) or "").strip()
    token = (args.token or os.getenv(TOKEN_VAR) or "").strip()
    if not url:
        raise dtapi.ConfigurationError(f"missing environment URL (use --env-url or set {ENV_URL_VAR})")
    if not token:
        raise dtapi.ConfigurationError(f"missing API token (use --token or set {TOKEN_VAR})")

    if args.insecure:
        import urllib3
        from urllib3.exceptions import InsecureRequestWarning

        urllib3.disable_warnings(InsecureRequestWarning)

    return dtapi.DynatraceEnvironment(
        url,
        token,
        verify=not args.insecure,
        http_timeout=args.http_timeout,
    )


def _run_doctor(dtapi, args) -> int:
    dotenv_path = _load_dotenv()
    url = (args.env_url or os.getenv(ENV_URL_VAR) or "").strip()
    token = (args.token or os.getenv(TOKEN_VAR) or "").strip()

    missing_required = []
    if not url:
        missing_required.append(ENV_URL_VAR)
    if not token:
        missing_required.append(TOKEN_VAR)

    payload = {
        "ok": len(missing_required) == 0,
        "cwd": str(Path.cwd()),
        "dotenv": str(dotenv_path) if dotenv_path else "",
        "checks": {
            "env": {
                "missing_required": missing_required,
                "values": {
                    ENV_URL_VAR: {"set": bool(url), "value": url},
                    # Never echo the token itself.
                    TOKEN_VAR: {"set": bool(token)},
                },
            }
        },
    }

    if url:
        try:
            normalized = dtapi.normalize_env_url(url)
            payload["checks"]["env"]["normalized_url"] = normalized
            payload["checks"]["env"]["env_type"] = dtapi.classify_environment(normalized)
        except dtapi.ConfigurationError as e:
            payload["ok"] = False
            payload["checks"]["env"]["error"] = str(e)

    if args.probe and payload["ok"]:
        min_version = dtapi.DEFAULT_MIN_VERSION if args.min_version is None else args.min_version
        try:
            env = _build_environment(dtapi, args)
            report = dtapi.gather_compatibility_report(
                env,
                min_version=min_version,
                required_scopes=_parse_scopes_arg(args.scopes),
            )
            payload["checks"]["probe"] = report
            payload["ok"] = bool(report["ok"])
        except dtapi.DtApiError as e:
            payload["ok"] = False
            payload["checks"]["probe"] = {"ok": False, "error": str(e)}

    out_path = _resolve_out_path(args.out)
    if args.format == "json":
        _write_json(out_path, payload)
    else:
        lines: list[str] = [f"ok: {str(payload['ok']).lower()}"]
        if payload.get("dotenv"):
            lines.append(f"dotenv: {payload['dotenv']}")
        if missing_required:
            lines.append("missing required env vars: " + ", ".join(missing_required))
        env_checks = payload["checks"]["env"]
        if env_checks.get("normalized_url"):
            lines.append(f"environment: {env_checks['normalized_url']} ({env_checks['env_type']})")
        probe = payload["checks"].get("probe")
        if probe is not None:
            if "checks" not in probe:
                lines.append(f"probe: failed ({probe.get('error', '')})")
            for name, check in (probe.get("checks") or {}).items():
                status = "ok" if check.get("ok") else f"failed ({check.get('error', '')})"
                lines.append(f"probe {name}: {status}")
        _write_lines(out_path, lines)

    return _EXIT_OK if payload["ok"] else _EXIT_API_ERROR


def _run_report(dtapi, args) -> int:
    collect, scopes, default_min_version, sort_keys = _REPORTS[args.cmd]
    min_version = default_min_version if args.min_version is None else args.min_version

    _load_dotenv()
    try:
        env = _build_environment(dtapi, args)
    except dtapi.ConfigurationError as e:
        sys.stderr.write(f"configuration error: {e}\n")
        return _EXIT_USAGE

    try:
        if args.skip_checks:
            logging.info("skipping compatibility checks for %s", env.url)
        else:
            dtapi.check_compatibility(
                env,
                min_version=min_version,
                required_scopes=scopes,
            )
        records, columns = collect(dtapi, env, args)
    except dtapi.CompatibilityError as e:
        sys.stderr.write(f"incompatible environment: {e}\n")
        return _EXIT_INCOMPATIBLE
    except dtapi.DynatraceApiError as e:
        sys.stderr.write(f"{args.cmd} failed: {e}\n")
        return _EXIT_API_ERROR

    records = dtapi.sort_records(records, sort_keys)

    out_path = _resolve_out_path(args.out)
    fmt = args.format or ("csv" if out_path is not None else "table")
    if fmt == "json":
        _write_json(out_path, records)
    elif fmt == "csv":
        _write_csv(out_path, records, columns=columns)
    else:
        _write_table(out_path, records, columns=columns)
    return _EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    # Import inside the command so `--help` works without requiring env/config.
    import dtapi

    level = _resolve_cli_log_level(args)
    if level:
        try:
            dtapi.configure_logging(level)
        except ValueError as e:
            sys.stderr.write(f"invalid --log-level: {e}\n")
            return _EXIT_USAGE

    if args.cmd == "doctor":
        return _run_doctor(dtapi, args)

    if args.cmd in _REPORTS:
        return _run_report(dtapi, args)

    sys.stderr.write("unknown command\n")
    return _EXIT_USAGE


if __name__ == "__main__":
    raise SystemExit(main())
