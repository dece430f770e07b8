#!/usr/bin/python3
"""
Helpers for querying a Dynatrace environment's REST API.

The CLI (`dtapi_cli.py`) and the standalone report scripts build on this module:
  - environment URL normalization and classification
  - the pre-flight compatibility gate (environment type, API version, token scopes)
  - list + per-id detail fetching
  - flattening detail payloads into report records
"""
import logging
import re
import sys
from datetime import datetime, timezone

import requests

_VERSION = "1.2"

DEFAULT_MIN_VERSION = 176
DEFAULT_HTTP_TIMEOUT = (10.0, 60.0)

ENV_TYPE_ENV = "env"
ENV_TYPE_CLUSTER = "cluster"

CLUSTER_VERSION_PATH = "/api/v1/config/clusterversion"
TOKEN_LOOKUP_PATH = "/api/v1/tokens/lookup"

DASHBOARDS_PATH = "/api/config/v1/dashboards"
DASHBOARD_PATH = "/api/config/v1/dashboards/{id}"
MANAGEMENT_ZONES_PATH = "/api/config/v1/managementZones"
MANAGEMENT_ZONE_PATH = "/api/config/v1/managementZones/{id}"
AUDIT_LOGS_PATH = "/api/v2/auditlogs"

DASHBOARD_COLUMNS = [
    "owner",
    "name",
    "shared",
    "sharedViaLink",
    "published",
    "managementZone",
    "numberOfTiles",
    "defaultTimeFrame",
    "managementZoneId",
    "id",
]
DASHBOARD_SHORT_COLUMNS = ["owner", "name", "id"]

MANAGEMENT_ZONE_COLUMNS = [
    "name",
    "id",
    "description",
    "numberOfRules",
    "numberOfEnabledRules",
    "numberOfDimensionalRules",
    "ruleTypes",
]
MANAGEMENT_ZONE_SHORT_COLUMNS = ["name", "id"]

AUDIT_LOG_COLUMNS = [
    "timestamp",
    "user",
    "userType",
    "userOrigin",
    "category",
    "eventType",
    "entityId",
    "success",
    "origin",
    "logId",
]
AUDIT_LOG_SHORT_COLUMNS = ["timestamp", "user", "eventType", "entityId"]

_SAAS_TENANT_RE = re.compile(r"^https?://[\w-]+\.live\.dynatrace\.com(/|$)", re.IGNORECASE)
_MANAGED_TENANT_RE = re.compile(r"^https?://[^/]+/e/[\w-]+(/|$)", re.IGNORECASE)
_VERSION_RE = re.compile(r"^\s*(\d+)\.(\d+)")

_REDACT_PATTERNS = (
    (re.compile(r"(?i)(api-token\s+)[^\s\"',]+"), r"\1[REDACTED]"),
    (re.compile(r"(?i)(bearer\s+)[^\s\"',]+"), r"\1[REDACTED]"),
    (re.compile(r"(?i)(\"token\"\s*:\s*\")[^\"]*(\")"), r"\1[REDACTED]\2"),
    (re.compile(r"(?i)(api_token=|token=)[^\s&\"']+"), r"\1[REDACTED]"),
    # Dynatrace token format: dt0c01.<public>.<secret>
    (re.compile(r"\bdt0[a-z]\d{2}\.[A-Za-z0-9]+\.[A-Za-z0-9]+"), "[REDACTED]"),
)


class DtApiError(Exception):
    """Base error for everything raised by this module."""


class ConfigurationError(DtApiError):
    pass


class CompatibilityError(DtApiError):
    """
    The target environment or token cannot be used by the reports.

    `check` is one of "environment", "version", "scopes"; `expected`/`actual` describe the
    mismatch so callers can render it however they like.
    """

    def __init__(self, message: str, *, check: str, expected=None, actual=None):
        super().__init__(message)
        self.check = check
        self.expected = expected
        self.actual = actual


class DynatraceApiError(DtApiError):
    def __init__(self, message: str, *, status_code: int | None = None, url: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


def configure_logging(level) -> None:
    """Send log records to stderr so stdout stays usable for report output."""
    if isinstance(level, str):
        cooked = level.strip().upper()
        numeric = logging.getLevelName(cooked)
        if not isinstance(numeric, int):
            raise ValueError(f"unknown log level: {level!r}")
        level = numeric

    root = logging.getLogger()
    if not any(getattr(h, "_dtapi_handler", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        handler._dtapi_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(level)


def redact_sensitive_text(text: str) -> str:
    cooked = str(text or "")
    for pattern, replacement in _REDACT_PATTERNS:
        cooked = pattern.sub(replacement, cooked)
    return cooked


def normalize_env_url(raw: str) -> str:
    """
    Canonicalize a user-supplied environment URL.

    Adds `https://` when no scheme is present and strips exactly one trailing slash.
    Anything else is left alone; a malformed URL fails later on the first request.
    """
    url = (raw or "").strip()
    if not url:
        raise ConfigurationError("environment URL is empty")
    if not url.lower().startswith(("http://", "https://")):
        url = "https://" + url
    if url.endswith("/"):
        url = url[:-1]
    return url


def classify_environment(url: str) -> str:
    if _SAAS_TENANT_RE.match(url or "") or _MANAGED_TENANT_RE.match(url or ""):
        return ENV_TYPE_ENV
    return ENV_TYPE_CLUSTER


def parse_version(value: str) -> tuple[int, int]:
    """Parse "1.180.0.20190808-123456" (or "1.180") into (1, 180)."""
    m = _VERSION_RE.match(str(value or ""))
    if not m:
        raise ValueError(f"unparseable version: {value!r}")
    return (int(m.group(1)), int(m.group(2)))


class DynatraceEnvironment:
    """
    Connection settings for one Dynatrace tenant plus the HTTP plumbing to query it.

    Everything the fetchers need is held here explicitly; nothing is read from module state.
    """

    def __init__(
        self,
        url: str,
        token: str,
        *,
        verify: bool = True,
        http_timeout: tuple[float, float] | None = None,
        session=None,
    ):
        if not (token or "").strip():
            raise ConfigurationError("API token is empty")
        self.url = normalize_env_url(url)
        self._token = token.strip()
        self.verify = bool(verify)
        self._http_timeout = tuple(http_timeout or DEFAULT_HTTP_TIMEOUT)
        self._session = session if session is not None else requests.Session()

    def __repr__(self) -> str:
        return f"DynatraceEnvironment(url={self.url!r}, verify={self.verify})"

    @property
    def token(self) -> str:
        return self._token

    @property
    def env_type(self) -> str:
        return classify_environment(self.url)

    def _headers(self) -> dict:
        return {
            "Authorization": f"Api-Token {self._token}",
            "Accept": "application/json",
            "Content-Type": "application/json; charset=utf-8",
        }

    def _request(self, method: str, path: str, *, params=None, payload=None):
        url = self.url + path
        logging.debug("%s %s params=%s", method.upper(), url, params or {})
        try:
            resp = self._session.request(
                method=method,
                url=url,
                headers=self._headers(),
                params=params,
                json=payload,
                verify=self.verify,
                timeout=self._http_timeout,
            )
        except requests.RequestException as e:
            raise DynatraceApiError(
                redact_sensitive_text(f"{method.upper()} {url} failed: {e}"), url=url
            ) from e

        status = int(getattr(resp, "status_code", 0) or 0)
        if not 200 <= status < 300:
            body = str(getattr(resp, "text", "") or "")[:500]
            raise DynatraceApiError(
                redact_sensitive_text(f"{method.upper()} {url} returned http {status}: {body}"),
                status_code=status,
                url=url,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise DynatraceApiError(
                f"{method.upper()} {url} returned a non-JSON body", status_code=status, url=url
            ) from e

    def get(self, path: str, *, params=None):
        return self._request("get", path, params=params)

    def post(self, path: str, payload=None):
        return self._request("post", path, payload=payload)

    def cluster_version(self) -> str:
        payload = self.get(CLUSTER_VERSION_PATH) or {}
        return str(payload.get("version", "") or "")

    def token_scopes(self, token: str | None = None) -> list[str]:
        payload = self.post(TOKEN_LOOKUP_PATH, {"token": token or self._token}) or {}
        scopes = payload.get("scopes") or []
        return [str(s) for s in scopes]


def _check_environment_type(env: DynatraceEnvironment) -> None:
    env_type = env.env_type
    if env_type != ENV_TYPE_ENV:
        raise CompatibilityError(
            f"{env.url} looks like a cluster URL (type={env_type}); "
            "use a tenant URL (https://<id>.live.dynatrace.com or https://<host>/e/<id>)",
            check="environment",
            expected=ENV_TYPE_ENV,
            actual=env_type,
        )


def _check_version(env: DynatraceEnvironment, min_version: int) -> str:
    raw = env.cluster_version()
    try:
        major, minor = parse_version(raw)
    except ValueError as e:
        raise CompatibilityError(
            f"could not read environment version: {e}",
            check="version",
            expected=f"1.{min_version}",
            actual=raw,
        ) from e
    actual = f"{major}.{minor}"
    if major != 1 or minor < int(min_version):
        raise CompatibilityError(
            f"environment version {actual} is not supported; requires 1.{min_version} or newer",
            check="version",
            expected=f"1.{min_version}",
            actual=actual,
        )
    return actual


def _scope_set(required_scopes) -> set[str]:
    # A bare string is one scope, not an iterable of characters.
    if isinstance(required_scopes, str):
        return {required_scopes} if required_scopes else set()
    return set(required_scopes or ())


def _check_scopes(env: DynatraceEnvironment, token: str | None, required_scopes) -> list[str]:
    required = _scope_set(required_scopes)
    granted = env.token_scopes(token)
    missing = sorted(required - set(granted))
    if missing:
        raise CompatibilityError(
            f"API token is missing required scope(s): {', '.join(missing)} "
            f"(granted: {', '.join(sorted(granted)) or 'none'})",
            check="scopes",
            expected=sorted(required),
            actual=sorted(granted),
        )
    return granted


def check_compatibility(
    env: DynatraceEnvironment,
    token: str | None = None,
    min_version: int = DEFAULT_MIN_VERSION,
    required_scopes=(),
) -> None:
    """
    Pre-flight gate run before any report query.

    Raises CompatibilityError on the first failed check:
      1. the URL must point at a tenant, not a cluster
      2. the environment must run version 1.<min_version> or newer
      3. the token must hold every scope in `required_scopes`
    Transport failures surface as DynatraceApiError.
    """
    _check_environment_type(env)
    version = _check_version(env, min_version)
    logging.info("environment %s runs version %s", env.url, version)
    required = _scope_set(required_scopes)
    if required:
        _check_scopes(env, token, required)
        logging.info("token holds required scopes: %s", ", ".join(sorted(required)))


def gather_compatibility_report(
    env: DynatraceEnvironment,
    token: str | None = None,
    min_version: int = DEFAULT_MIN_VERSION,
    required_scopes=(),
) -> dict:
    """Run every gate check without stopping at the first failure (for `dtapi doctor`)."""
    checks: dict = {}

    try:
        _check_environment_type(env)
        checks["environment"] = {"ok": True, "type": env.env_type}
    except CompatibilityError as e:
        checks["environment"] = {"ok": False, "type": e.actual, "error": str(e)}

    try:
        version = _check_version(env, min_version)
        checks["version"] = {"ok": True, "version": version, "required": f"1.{min_version}"}
    except (CompatibilityError, DynatraceApiError) as e:
        checks["version"] = {
            "ok": False,
            "version": getattr(e, "actual", None),
            "required": f"1.{min_version}",
            "error": str(e),
        }

    try:
        granted = _check_scopes(env, token, required_scopes)
        checks["scopes"] = {
            "ok": True,
            "granted": sorted(granted),
            "required": sorted(_scope_set(required_scopes)),
        }
    except CompatibilityError as e:
        checks["scopes"] = {
            "ok": False,
            "granted": e.actual,
            "required": e.expected,
            "error": str(e),
        }
    except DynatraceApiError as e:
        checks["scopes"] = {"ok": False, "error": str(e)}

    return {"ok": all(c.get("ok") for c in checks.values()), "checks": checks}


def fetch_details(
    env: DynatraceEnvironment,
    list_path: str,
    detail_path: str,
    *,
    list_key: str,
    on_error: str = "abort",
) -> list[dict]:
    """
    List a config collection and fetch each item's full representation, one at a time.

    A failed list call always raises. A failed detail call raises too unless
    `on_error="skip"`, in which case it is logged and the item is left out.
    """
    if on_error not in ("abort", "skip"):
        raise ValueError(f"invalid on_error: {on_error!r}")

    payload = env.get(list_path) or {}
    summaries = payload.get(list_key) or []
    logging.info("%s: %d item(s) listed", list_path, len(summaries))

    details: list[dict] = []
    for summary in summaries:
        item_id = str((summary or {}).get("id", "") or "")
        if not item_id:
            logging.warning("%s: skipping list entry without id: %r", list_path, summary)
            continue
        try:
            details.append(env.get(detail_path.format(id=item_id)) or {})
        except DynatraceApiError as e:
            if on_error == "abort":
                raise
            logging.warning("skipping %s after failed detail fetch: %s", item_id, e)
    return details


def iter_audit_logs(
    env: DynatraceEnvironment,
    *,
    from_: str = "now-2h",
    to: str = "",
    filter_expr: str = "",
    sort: str = "",
    page_size: int = 1000,
):
    """Yield audit log entries across all pages (follows `nextPageKey`)."""
    params = {"from": from_, "pageSize": max(int(page_size or 1000), 1)}
    if to:
        params["to"] = to
    if filter_expr:
        params["filter"] = filter_expr
    if sort:
        params["sort"] = sort

    pages = 0
    while True:
        payload = env.get(AUDIT_LOGS_PATH, params=params) or {}
        pages += 1
        for entry in payload.get("auditLogs") or []:
            yield entry
        next_key = payload.get("nextPageKey")
        if not next_key:
            logging.info("%s: %d page(s) fetched", AUDIT_LOGS_PATH, pages)
            return
        # The API rejects any other query parameter alongside nextPageKey.
        params = {"nextPageKey": next_key}


def _count(value) -> int:
    return len(value) if isinstance(value, (list, tuple)) else 0


def project_dashboard(detail: dict, *, short: bool = False) -> dict:
    meta = (detail or {}).get("dashboardMetadata") or {}
    sharing = meta.get("sharingDetails") or {}
    dash_filter = meta.get("dashboardFilter") or {}
    zone = dash_filter.get("managementZone") or {}

    record = {
        "owner": meta.get("owner") or "",
        "name": meta.get("name") or "",
        "shared": bool(meta.get("shared", False)),
        "sharedViaLink": bool(sharing.get("linkShared", False)),
        "published": bool(sharing.get("published", False)),
        "managementZone": zone.get("name") or "",
        "numberOfTiles": _count((detail or {}).get("tiles")),
        "defaultTimeFrame": dash_filter.get("timeframe") or "",
        "managementZoneId": zone.get("id") or "",
        "id": (detail or {}).get("id") or "",
    }
    columns = DASHBOARD_SHORT_COLUMNS if short else DASHBOARD_COLUMNS
    return {k: record[k] for k in columns}


def project_management_zone(detail: dict, *, short: bool = False) -> dict:
    rules = (detail or {}).get("rules") or []
    rule_types = sorted({str(r.get("type")) for r in rules if isinstance(r, dict) and r.get("type")})
    record = {
        "name": (detail or {}).get("name") or "",
        "id": str((detail or {}).get("id") or ""),
        "description": (detail or {}).get("description") or "",
        "numberOfRules": _count(rules),
        "numberOfEnabledRules": sum(
            1 for r in rules if isinstance(r, dict) and r.get("enabled", True)
        ),
        "numberOfDimensionalRules": _count((detail or {}).get("dimensionalRules")),
        "ruleTypes": ",".join(rule_types),
    }
    columns = MANAGEMENT_ZONE_SHORT_COLUMNS if short else MANAGEMENT_ZONE_COLUMNS
    return {k: record[k] for k in columns}


def _format_epoch_ms(value) -> str:
    try:
        ms = int(value)
    except (TypeError, ValueError):
        return str(value or "")
    ts = datetime.fromtimestamp(ms // 1000, tz=timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S") + f".{ms % 1000:03d}Z"


def project_audit_log(entry: dict, *, short: bool = False) -> dict:
    entry = entry or {}
    record = {
        "timestamp": _format_epoch_ms(entry.get("timestamp")),
        "user": entry.get("user") or "",
        "userType": entry.get("userType") or "",
        "userOrigin": entry.get("userOrigin") or "",
        "category": entry.get("category") or "",
        "eventType": entry.get("eventType") or "",
        "entityId": entry.get("entityId") or "",
        "success": bool(entry.get("success", False)),
        "origin": entry.get("origin") or "",
        "logId": entry.get("logId") or "",
    }
    columns = AUDIT_LOG_SHORT_COLUMNS if short else AUDIT_LOG_COLUMNS
    return {k: record[k] for k in columns}


def sort_records(records: list[dict], keys) -> list[dict]:
    """Order records by explicit keys (string values compare case-insensitively)."""

    def _key(record):
        out = []
        for k in keys:
            v = record.get(k, "")
            out.append(v.lower() if isinstance(v, str) else str(v))
        return tuple(out)

    return sorted(records, key=_key)
