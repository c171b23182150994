import json
from datetime import date

import pytest

from pipelines.mixpanel.models import DateRange, RunContext

TODAY = date(2026, 1, 1)


class FakeResponse:
    def __init__(self, status_code=200, text=""):
        self.status_code = status_code
        self.text = text
        self.content = text.encode("utf-8")


class FakeSession:
    """Stands in for requests.Session; ``responder(url, params, headers)`` builds each reply."""

    def __init__(self, responder):
        self.responder = responder
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": dict(params or {}), "headers": dict(headers or {})})
        result = self.responder(url, params or {}, headers or {})
        if isinstance(result, Exception):
            raise result
        return result


class FakeClient:
    """Duck-typed MixpanelClient returning canned records per slice start date."""

    def __init__(self, by_start=None, default=None):
        self.by_start = by_start or {}
        self.default = default if default is not None else []
        self.calls = []

    def _records(self, from_date):
        return list(self.by_start.get(from_date, self.default))

    def export(self, params, endpoint=None):
        self.calls.append(("export", params))
        return self._records(params["from_date"])

    def export_small_dataset(self, params, endpoint=None):
        self.calls.append(("export_small_dataset", params))
        start = date.fromisoformat(params["from_date"])
        return DateRange(start, start), self._records(params["from_date"])

    def export_sample(self, params, endpoint=None):
        self.calls.append(("export_sample", params))
        return self._records(params["from_date"])

    def send_jql_script(self, params, endpoint=None):
        self.calls.append(("send_jql_script", params))
        return self._records(_jql_from(params))

    def send_jql_script_small_dataset(self, params, endpoint=None):
        self.calls.append(("send_jql_script_small_dataset", params))
        return self._records(_jql_from(params))


def _jql_from(params):
    return json.loads(params["params"])["from_date"]


@pytest.fixture
def ctx():
    return RunContext(run_id="test-run", today=TODAY)


@pytest.fixture
def preview_ctx():
    return RunContext(run_id="test-preview", preview=True, today=TODAY)


@pytest.fixture
def creds():
    return {"api_key": "api_key", "api_secret": "api_secret"}
