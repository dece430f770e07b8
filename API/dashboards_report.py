#!/usr/bin/python3
import sys


def main(argv: list[str] | None = None) -> int:
    """Print (or export with -o) the dashboard inventory of a tenant.

    Kept as a tiny entrypoint so existing cron jobs and tests can call it without going
    through the `dtapi` subcommand parser. Accepts the same flags as `dtapi dashboards`.
    """

    # Easiest to import dtapi_cli if it is in the same directory as this script.
    import dtapi_cli

    return dtapi_cli.main(["dashboards", *(sys.argv[1:] if argv is None else argv)])


if __name__ == "__main__":
    raise SystemExit(main())
