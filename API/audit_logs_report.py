#!/usr/bin/python3
import sys


def main(argv: list[str] | None = None) -> int:
    """Print (or export with -o) audit log entries, by default for the last two hours.

    Accepts the same flags as `dtapi audit-logs`, e.g.:
        audit_logs_report.py --from now-1d --filter 'category("CONFIG")' -o out/audit.csv
    """
    import dtapi_cli

    return dtapi_cli.main(["audit-logs", *(sys.argv[1:] if argv is None else argv)])


if __name__ == "__main__":
    raise SystemExit(main())
