from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from aiohttp import test_utils

from config.constants import BlockReason, RateLimitScope
from config.settings import ServerSettings
from exceptions import (
    CrawlAlreadyRunningError,
    DatabaseQueryError,
    RateLimitExceededError,
    TargetNotFoundError,
    UnsafeTargetError,
)
from monitoring.rate_limiter import RateLimitDecision
from monitoring.server import TriggerServer
from monitoring.service import TriggerResult


TOKEN = "s3cret"
AUTH = {"Authorization": f"Bearer {TOKEN}", "X-Actor-Id": "owner-1"}


class _Payload:
    def __init__(self, data: Dict[str, Any]) -> None:
        self.data = data

    def to_dict(self) -> Dict[str, Any]:
        return self.data


class StubService:
    """Records trigger calls; raises ``error`` when set."""

    def __init__(self) -> None:
        self.engine = SimpleNamespace(in_flight=set())
        self.limiter = SimpleNamespace(get_stats=lambda: {"backend": "memory", "degraded_checks": 0})
        self.calls: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None
        self.decision = RateLimitDecision(
            allowed=True,
            remaining=4,
            limit=5,
            reset_at=1_000_060.0,
            retry_after=0.0,
            bucket="ping",
            scope=RateLimitScope.USER,
        )

    def _called(self, name: str, **kwargs: Any) -> None:
        self.calls.append({"name": name, **kwargs})
        if self.error is not None:
            raise self.error

    async def run_monitoring_pass(self, actor_id=None, client_ip=None) -> TriggerResult:
        self._called("pass", actor_id=actor_id, client_ip=client_ip)
        return TriggerResult(result=_Payload({"checked": 3}))

    async def describe_target(self, actor_id, target_id) -> Dict[str, Any]:
        self._called("describe", actor_id=actor_id, target_id=target_id)
        return {"target": {"id": target_id}, "alert_state": "healthy"}

    async def ping_now(self, actor_id, target_id, client_ip=None) -> TriggerResult:
        self._called("ping", actor_id=actor_id, target_id=target_id, client_ip=client_ip)
        return TriggerResult(result=_Payload({"outcome": "up"}), rate_limit=self.decision)

    async def scan_now(self, actor_id, target_id, client_ip=None) -> TriggerResult:
        self._called("crawl", actor_id=actor_id, target_id=target_id, client_ip=client_ip)
        return TriggerResult(result=_Payload({"status": "completed"}), rate_limit=self.decision)

    async def reset_rate_limit(self, bucket, identity) -> None:
        self._called("reset", bucket=bucket, identity=identity)


@pytest.fixture
def stub() -> StubService:
    return StubService()


@pytest.fixture
async def client(stub):
    server = TriggerServer(ServerSettings(enabled=True, service_token=TOKEN), stub, app_version="2.0.0")
    async with test_utils.TestClient(test_utils.TestServer(server.app)) as test_client:
        yield test_client


async def test_health_needs_no_token(client) -> None:
    response = await client.get("/health")

    assert response.status == 200
    body = await response.json()
    assert body["status"] == "healthy"
    assert body["version"] == "2.0.0"
    assert body["in_flight_checks"] == 0
    assert body["memory_mb"] > 0
    assert body["rate_limiter"]["backend"] == "memory"


async def test_api_requires_the_service_token(client, stub) -> None:
    missing = await client.post("/api/v1/targets/1/ping", headers={"X-Actor-Id": "owner-1"})
    wrong = await client.post(
        "/api/v1/targets/1/ping",
        headers={"Authorization": "Bearer nope", "X-Actor-Id": "owner-1"},
    )

    assert missing.status == 401
    assert wrong.status == 401
    assert (await wrong.json())["error"] == "unauthorized"
    assert stub.calls == []


async def test_ping_returns_result_with_rate_headers(client, stub) -> None:
    response = await client.post("/api/v1/targets/7/ping", headers=AUTH)

    assert response.status == 200
    assert (await response.json()) == {"outcome": "up"}
    assert response.headers["X-RateLimit-Limit"] == "5"
    assert response.headers["X-RateLimit-Remaining"] == "4"
    assert "Retry-After" not in response.headers
    assert stub.calls[0]["target_id"] == 7
    assert stub.calls[0]["actor_id"] == "owner-1"


async def test_forwarded_headers_are_ignored_by_default(client, stub) -> None:
    headers = dict(AUTH, **{"X-Forwarded-For": "203.0.113.9"})

    await client.post("/api/v1/targets/7/crawl", headers=headers)

    assert stub.calls[0]["client_ip"] == "127.0.0.1"


async def test_forwarded_address_is_used_behind_a_trusted_proxy(stub) -> None:
    settings = ServerSettings(enabled=True, service_token=TOKEN, trust_forwarded_headers=True)
    server = TriggerServer(settings, stub)
    headers = dict(AUTH, **{"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})

    async with test_utils.TestClient(test_utils.TestServer(server.app)) as client:
        await client.post("/api/v1/targets/7/crawl", headers=headers)

    assert stub.calls[0]["client_ip"] == "203.0.113.9"


async def test_rate_limited_call_gets_429(client, stub) -> None:
    stub.error = RateLimitExceededError(retry_after=30, limit=5, bucket="ping", scope="user", reset_at=1_000_030.0)

    response = await client.post("/api/v1/targets/7/ping", headers=AUTH)

    assert response.status == 429
    assert response.headers["Retry-After"] == "30"
    assert response.headers["X-RateLimit-Remaining"] == "0"
    assert response.headers["X-RateLimit-Reset"] == "1000030"
    body = await response.json()
    assert body["retry_after"] == 30
    assert body["scope"] == "user"


@pytest.mark.parametrize(
    "error, status, code",
    [
        (UnsafeTargetError(reason=BlockReason.METADATA_SERVICE), 422, "target_unsafe"),
        (TargetNotFoundError(target_id=7), 404, "not_found"),
        (CrawlAlreadyRunningError(target_id=7), 409, "crawl_running"),
        (DatabaseQueryError("disk full"), 503, "unavailable"),
    ],
)
async def test_domain_errors_are_mapped(client, stub, error, status, code) -> None:
    stub.error = error

    response = await client.post("/api/v1/targets/7/crawl", headers=AUTH)

    assert response.status == status
    assert (await response.json())["error"] == code


async def test_unsafe_target_reports_reason(client, stub) -> None:
    stub.error = UnsafeTargetError(reason=BlockReason.PRIVATE_ADDRESS)

    response = await client.post("/api/v1/targets/7/ping", headers=AUTH)

    assert (await response.json())["reason"] == "private_address"


async def test_actor_header_is_required(client, stub) -> None:
    response = await client.post("/api/v1/targets/7/ping", headers={"Authorization": f"Bearer {TOKEN}"})

    assert response.status == 400
    assert (await response.json())["error"] == "missing_actor"
    assert stub.calls == []


async def test_non_numeric_target_is_not_found(client) -> None:
    response = await client.get("/api/v1/targets/abc", headers=AUTH)

    assert response.status == 404


async def test_describe_and_pass(client, stub) -> None:
    described = await client.get("/api/v1/targets/7", headers=AUTH)
    passed = await client.post("/api/v1/monitoring/pass", headers={"Authorization": f"Bearer {TOKEN}"})

    assert (await described.json())["alert_state"] == "healthy"
    assert (await passed.json()) == {"checked": 3}
    assert stub.calls[1]["actor_id"] is None


async def test_reset_endpoint(client, stub) -> None:
    response = await client.delete("/api/v1/rate-limits/ping/owner-1", headers=AUTH)

    assert response.status == 200
    assert (await response.json())["reset"] is True
    assert stub.calls == [{"name": "reset", "bucket": "ping", "identity": "owner-1"}]
