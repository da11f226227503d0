from typing import List, Mapping, Optional, Sequence

from fastapi.testclient import TestClient

from market_feed.config import Settings
from market_feed.main import build_app_resources, create_app
from market_feed.services.analysis import CompletionError
from market_feed.services.cache_store import InMemoryCacheStore, StoreUnavailableError


ORIGIN = "http://localhost:3000"

client = TestClient(create_app(Settings()))


class _FakeProvider:
    def __init__(self, reply: str = "Markets are broadly higher.", *, fail: bool = False) -> None:
        self.reply = reply
        self.fail = fail
        self.received: List[Sequence[Mapping[str, str]]] = []

    async def complete(self, messages: Sequence[Mapping[str, str]]) -> str:
        self.received.append(messages)
        if self.fail:
            raise CompletionError("provider down")
        return self.reply

    async def aclose(self) -> None:  # pragma: no cover - lifecycle not exercised
        pass


class _BrokenStore:
    async def get(self, key: str) -> Optional[str]:
        raise StoreUnavailableError("redis get failed: connection refused")

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        raise StoreUnavailableError("redis set failed: connection refused")

    async def incr(self, key: str) -> int:
        raise StoreUnavailableError("redis incr failed: connection refused")

    async def expire(self, key: str, seconds: int) -> bool:
        raise StoreUnavailableError("redis expire failed: connection refused")

    async def ttl(self, key: str) -> int:
        raise StoreUnavailableError("redis ttl failed: connection refused")

    async def aclose(self) -> None:
        pass


def _client_with(settings: Settings | None = None, *, store=None, provider=None) -> TestClient:
    settings = settings or Settings()
    resources = build_app_resources(settings, store=store or InMemoryCacheStore())
    resources.completion_provider = provider
    return TestClient(create_app(resources=resources))


def _analysis_body() -> dict:
    return {
        "messages": [{"role": "user", "content": "How is Europe trading?"}],
        "marketData": {"emea": [{"id": "DAX", "value": 19373.83}]},
    }


def _ai_headers(ip: str, origin: str = ORIGIN) -> dict:
    return {"Origin": origin, "X-Forwarded-For": ip}


def test_get_market_data_returns_three_regions() -> None:
    response = client.get("/api/market-data")

    assert response.status_code == 200
    data = response.json()
    assert len(data["americas"]) == 6
    assert len(data["emea"]) == 8
    assert len(data["asiaPacific"]) == 4
    assert data["americas"][0]["id"] == "DOW JONES"
    assert data["americas"][0]["num"] == "11)"
    for row in data["americas"] + data["emea"] + data["asiaPacific"]:
        for field in ("value", "change", "pctChange", "avat", "ytd", "ytdCur"):
            assert round(row[field], 2) == row[field]
        assert len(row["trend1"]) == 8
        assert len(row["trend2"]) == 8


def test_update_then_read_serves_cached_data() -> None:
    api = _client_with()

    first = api.get("/api/market-data").json()
    assert first["isFromRedis"] is False
    assert "lastUpdated" in first

    update = api.post("/api/market-data", json={"action": "update"})
    assert update.status_code == 200
    assert update.json()["success"] is True
    assert update.json()["source"] == "simulated"

    cached = api.get("/api/market-data").json()
    assert cached["isFromRedis"] is True
    assert cached["source"] == "cached"
    assert "lastFetched" in cached


def test_update_rejects_unknown_action() -> None:
    response = client.post("/api/market-data", json={"action": "delete"})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid action"}


def test_update_requires_action() -> None:
    response = client.post("/api/market-data", json={})

    assert response.status_code == 422


def test_seed_cache_stores_dataset() -> None:
    api = _client_with()

    response = api.post("/api/seed-cache")

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["source"] == "synthetic"
    assert api.get("/api/market-data").json()["isFromRedis"] is True


def test_scheduler_status_lists_refresh_task() -> None:
    response = client.get("/api/scheduler")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "stopped"
    assert data["registeredTasks"] == 1
    assert data["tasks"][0]["id"] == "market-data-refresh"
    assert data["tasks"][0]["intervalSeconds"] == 24 * 3600


def test_manual_refresh_run_is_recorded() -> None:
    api = _client_with()

    response = api.post("/api/scheduler/tasks/market-data-refresh/run")

    assert response.status_code == 200
    run = response.json()
    assert run["status"] == "succeeded"
    assert run["trigger"] == "manual"
    assert run["detail"] == "refreshed: 18 instruments (synthetic)"
    history = api.get("/api/scheduler").json()["history"]
    assert [entry["taskId"] for entry in history] == ["market-data-refresh"]


def test_manual_run_of_unknown_task_is_404() -> None:
    response = client.post("/api/scheduler/tasks/nope/run")

    assert response.status_code == 404


def test_ai_without_provider_is_503() -> None:
    response = client.post("/api/ai", json=_analysis_body(), headers=_ai_headers("10.0.0.1"))

    assert response.status_code == 503
    assert response.headers["X-RateLimit-Limit"] == "20"


def test_ai_rejects_unknown_origin() -> None:
    api = _client_with(provider=_FakeProvider())

    response = api.post("/api/ai", json=_analysis_body(), headers=_ai_headers("10.0.0.2", "https://evil.example"))

    assert response.status_code == 403
    assert response.json() == {"error": "Unauthorized origin"}


def test_ai_rejects_invalid_body() -> None:
    api = _client_with(provider=_FakeProvider())

    too_many = {"messages": [{"role": "user", "content": "hi"}] * 21}
    response = api.post("/api/ai", json=too_many, headers=_ai_headers("10.0.0.3"))
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid request format"
    assert response.json()["details"]

    bad_role = {"messages": [{"role": "robot", "content": "hi"}]}
    assert api.post("/api/ai", json=bad_role, headers=_ai_headers("10.0.0.3")).status_code == 400

    not_json = api.post(
        "/api/ai",
        content=b"{oops",
        headers={**_ai_headers("10.0.0.3"), "Content-Type": "application/json"},
    )
    assert not_json.status_code == 400


def test_ai_success_returns_text_with_rate_limit_headers() -> None:
    provider = _FakeProvider()
    api = _client_with(provider=provider)

    response = api.post("/api/ai", json=_analysis_body(), headers=_ai_headers("10.0.0.4"))

    assert response.status_code == 200
    assert response.json() == {"text": "Markets are broadly higher."}
    assert response.headers["X-RateLimit-Remaining"] == "19"
    sent = provider.received[0]
    assert sent[0]["role"] == "system"
    assert "DAX" in sent[0]["content"]
    assert sent[1] == {"role": "user", "content": "How is Europe trading?"}


def test_ai_provider_failure_is_500() -> None:
    api = _client_with(provider=_FakeProvider(fail=True))

    response = api.post("/api/ai", json=_analysis_body(), headers=_ai_headers("10.0.0.5"))

    assert response.status_code == 500


def test_ai_is_rate_limited_per_client() -> None:
    api = _client_with(Settings(rate_limit_max_requests=2), provider=_FakeProvider())

    statuses = [
        api.post("/api/ai", json=_analysis_body(), headers=_ai_headers("10.0.0.6")).status_code
        for _ in range(3)
    ]
    limited = api.post("/api/ai", json=_analysis_body(), headers=_ai_headers("10.0.0.6"))
    other = api.post("/api/ai", json=_analysis_body(), headers=_ai_headers("10.0.0.7"))

    assert statuses == [200, 200, 429]
    assert limited.status_code == 429
    assert limited.json()["error"] == "Rate limit exceeded. Please try again later."
    assert isinstance(limited.json()["reset"], int)
    assert limited.headers["X-RateLimit-Remaining"] == "0"
    assert other.status_code == 200


def test_broken_store_degrades_every_route() -> None:
    api = _client_with(store=_BrokenStore(), provider=_FakeProvider())

    read = api.get("/api/market-data")
    assert read.status_code == 200
    assert read.json()["isFromRedis"] is False
    assert "connection refused" in read.json()["error"]

    update = api.post("/api/market-data", json={"action": "update"})
    assert update.json()["success"] is True

    seed = api.post("/api/seed-cache")
    assert seed.json()["success"] is False

    # Rate limiting fails open by default.
    assert api.post("/api/ai", json=_analysis_body(), headers=_ai_headers("10.0.0.8")).status_code == 200


def test_broken_store_fails_closed_when_configured() -> None:
    api = _client_with(Settings(rate_limit_fail_open=False), store=_BrokenStore(), provider=_FakeProvider())

    response = api.post("/api/ai", json=_analysis_body(), headers=_ai_headers("10.0.0.9"))

    assert response.status_code == 429


def test_metrics_endpoint() -> None:
    client.get("/api/market-data")

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "market_data_reads_total" in response.text
