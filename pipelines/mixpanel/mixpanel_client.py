import enum
import hashlib
import json
import time
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from .errors import ConfigError, ServiceError
from .hooks import as_number
from .models import DateRange

EXPORT_ENDPOINT = "https://data.mixpanel.com/api/2.0/export/"
DEFAULT_JQL_ENDPOINT = "https://mixpanel.com/api/2.0/jql/"
TIMEOUT_SECONDS = 3600
SMALLSET_BYTE_LIMIT = 5 * 1024 * 1024
SMALLSET_BYTE_RANGE = f"0-{SMALLSET_BYTE_LIMIT}"
PROBE_OFFSETS = (1, 10, 100, 1000, 10000)


def signature(params: Dict[str, Any], api_secret: str) -> str:
    """md5 over sorted ``key=value`` pairs plus the secret.

    List values are dumped as compact JSON keeping their order.
    """
    payload = ""
    for key in sorted(str(k) for k in params):
        value = params[key]
        if isinstance(value, (list, tuple)):
            value = json.dumps(list(value), separators=(",", ":"), ensure_ascii=False)
        payload += f"{key}={value}"
    return hashlib.md5((payload + api_secret).encode("utf-8")).hexdigest()


def backoff_seconds(attempt: int, initial_wait: float) -> float:
    """Wait after the ``attempt``-th failed try (1-based)."""
    return initial_wait * (2 ** (attempt - 1))


class Outcome(enum.Enum):
    SUCCESS = "success"
    RETRY = "retry"
    FATAL = "fatal"


class RetryState(enum.Enum):
    ATTEMPTING = "attempting"
    SUCCESS = "success"
    FAILED_FATAL = "failed_fatal"
    FAILED_EXHAUSTED = "failed_exhausted"


def classify_status(status_code: int) -> Outcome:
    if 200 <= status_code < 300:
        return Outcome.SUCCESS
    if status_code == 429 or status_code >= 500:
        return Outcome.RETRY
    if 400 <= status_code < 500:
        return Outcome.FATAL
    return Outcome.RETRY


def parse_records(body: str, truncated: bool = False) -> List[Any]:
    """JSON array or one JSON document per line. Empty body -> []."""
    text = (body or "").strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ServiceError(f"Respuesta JSON inválida: {text[:200]}") from e
        return data
    lines = [ln for ln in text.splitlines() if ln.strip()]
    records = []
    for i, line in enumerate(lines):
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError as e:
            # Con Range la última línea puede venir cortada
            if truncated and i == len(lines) - 1:
                break
            raise ServiceError(f"Línea NDJSON inválida: {line[:200]}") from e
    return records


class MixpanelClient:
    """Signed GET client for the export and JQL endpoints.

    One instance per run; not meant to be shared across threads.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        retry_initial_wait_sec: float = 1,
        retry_limit: int = 5,
        timeout_seconds: int = TIMEOUT_SECONDS,
        session=None,
        sleep: Callable[[float], None] = time.sleep,
        today: Optional[date] = None,
        log=None,
    ):
        retry_limit = as_number("retry_limit", retry_limit)
        if retry_limit < 1:
            raise ConfigError(f"retry_limit debe ser >= 1 (recibido {retry_limit})")
        self.api_key = api_key
        self.api_secret = api_secret
        self.retry_initial_wait_sec = retry_initial_wait_sec
        self.retry_limit = retry_limit
        self.timeout = timeout_seconds
        self.session = session or requests.Session()
        self._sleep = sleep
        self._today = today
        self._log = log or (lambda level, **fields: None)

    @property
    def yesterday(self) -> date:
        return (self._today or date.today()) - timedelta(days=1)

    def set_signatures(self, params: Dict[str, Any]) -> Dict[str, Any]:
        signed = {k: v for k, v in params.items() if v is not None}
        signed["api_key"] = self.api_key
        signed.setdefault("expire", int(time.time()) + self.timeout)
        signed["sig"] = signature(signed, self.api_secret)
        # En la query string las listas viajan como JSON, igual que al firmar
        return {
            k: (json.dumps(list(v), separators=(",", ":"), ensure_ascii=False)
                if isinstance(v, (list, tuple)) else v)
            for k, v in signed.items()
        }

    def _get(self, endpoint: str, params: Dict[str, Any], headers: Dict[str, str]):
        return self.session.get(endpoint, params=params, headers=headers, timeout=self.timeout)

    def request(
        self, endpoint: str, params: Dict[str, Any], byte_range: Optional[str] = None
    ) -> str:
        signed = self.set_signatures(params)
        headers = {"Accept": "application/json", "User-Agent": "mixpanel-ingest/1.0"}
        if byte_range:
            headers["Range"] = f"bytes={byte_range}"

        state = RetryState.ATTEMPTING
        attempt = 0
        resp = None
        last_err = None
        while state is RetryState.ATTEMPTING:
            attempt += 1
            try:
                resp = self._get(endpoint, signed, headers)
                outcome = classify_status(resp.status_code)
                last_err = None
            except requests.RequestException as e:
                # ConnectionError, Timeout, ChunkedEncodingError...
                resp = None
                outcome = Outcome.RETRY
                last_err = e

            if outcome is Outcome.SUCCESS:
                state = RetryState.SUCCESS
            elif outcome is Outcome.FATAL:
                state = RetryState.FAILED_FATAL
            elif attempt >= self.retry_limit:
                state = RetryState.FAILED_EXHAUSTED
            else:
                wait = backoff_seconds(attempt, self.retry_initial_wait_sec)
                self._log(
                    "warning",
                    action="http_retry",
                    endpoint=endpoint,
                    attempt=attempt,
                    status=getattr(resp, "status_code", None),
                    error=str(last_err) if last_err else None,
                    wait_seconds=wait,
                )
                self._sleep(wait)

        if state is RetryState.SUCCESS:
            if byte_range:
                return resp.content[:SMALLSET_BYTE_LIMIT].decode("utf-8", errors="ignore")
            return resp.text
        if state is RetryState.FAILED_FATAL:
            raise ConfigError(f"[{resp.status_code}] {resp.text[:500]} | URL={endpoint}")
        if resp is None:
            raise ServiceError(
                f"Sin respuesta de {endpoint} tras {attempt} intentos: {last_err}",
                attempts=attempt,
            )
        raise ServiceError(
            f"[{resp.status_code}] {resp.text[:500]} | URL={endpoint} | intentos={attempt}",
            status_code=resp.status_code,
            attempts=attempt,
        )

    def request_records(
        self, endpoint: str, params: Dict[str, Any], byte_range: Optional[str] = None
    ) -> List[Any]:
        body = self.request(endpoint, params, byte_range)
        return parse_records(body, truncated=bool(byte_range))

    def request_small_dataset(self, endpoint: str, params: Dict[str, Any]) -> List[Any]:
        return self.request_records(endpoint, params, SMALLSET_BYTE_RANGE)

    def try_to_dates(self, from_date: date) -> List[date]:
        yesterday = self.yesterday
        candidates = [from_date + timedelta(days=n) for n in PROBE_OFFSETS]
        dates = [d for d in candidates if d <= yesterday]
        if not dates or dates[-1] != yesterday:
            dates.append(yesterday)
        return dates

    def probe_range(
        self, from_date: date, fetch: Callable[[date], List[Any]]
    ) -> Tuple[DateRange, List[Any]]:
        """Smallest [from_date, to] among the probe candidates with data."""
        latest_tried = None
        for to_date in self.try_to_dates(from_date):
            if to_date < from_date:
                continue
            latest_tried = to_date
            records = fetch(to_date)
            self._log("info", action="probe", from_date=from_date, to_date=to_date, rows=len(records))
            if records:
                return DateRange(from_date, to_date), records
        raise ConfigError(
            f"{from_date}..{latest_tried} has no record. "
            "Revisa el script o los filtros (event/where)."
        )

    def export(self, params: Dict[str, Any], endpoint: Optional[str] = None) -> List[Any]:
        return self.request_records(endpoint or EXPORT_ENDPOINT, params)

    def export_small_dataset(
        self, params: Dict[str, Any], endpoint: Optional[str] = None
    ) -> Tuple[DateRange, List[Any]]:
        from_date = date.fromisoformat(str(params["from_date"]))

        def fetch(to_date: date) -> List[Any]:
            probe_params = dict(params, to_date=to_date.isoformat())
            return self.request_small_dataset(endpoint or EXPORT_ENDPOINT, probe_params)

        return self.probe_range(from_date, fetch)

    def export_sample(self, params: Dict[str, Any], endpoint: Optional[str] = None) -> List[Any]:
        """First bytes of an export over the exact from_date..to_date in ``params``."""
        return self.request_small_dataset(endpoint or EXPORT_ENDPOINT, params)

    def send_jql_script(self, params: Dict[str, Any], endpoint: Optional[str] = None) -> List[Any]:
        return self.request_records(endpoint or DEFAULT_JQL_ENDPOINT, params)

    def send_jql_script_small_dataset(
        self, params: Dict[str, Any], endpoint: Optional[str] = None
    ) -> List[Any]:
        return self.request_small_dataset(endpoint or DEFAULT_JQL_ENDPOINT, params)
