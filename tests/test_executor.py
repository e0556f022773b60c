from __future__ import annotations

from typing import List

import httpx
import pytest

from config.constants import CheckOutcome, ErrorKind
from config.settings import SafetySettings
from exceptions import ProbeConnectionError, UnsafeTargetError
from monitoring.executor import CheckExecutor
from monitoring.safety import OutboundSafetyGuard


async def test_head_success_is_up(make_executor) -> None:
    requests: List[httpx.Request] = []
    executor = make_executor(lambda request: httpx.Response(200), requests)

    result = await executor.probe("https://example.com/")

    assert result.outcome == CheckOutcome.UP
    assert result.status_code == 200
    assert result.method == "HEAD"
    assert result.latency_ms is not None
    assert [r.method for r in requests] == ["HEAD"]


async def test_head_rejected_falls_back_to_get(make_executor) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(405 if request.method == "HEAD" else 200)

    executor = make_executor(handler)

    result = await executor.probe("https://example.com/")

    assert result.is_up
    assert result.method == "GET"


@pytest.mark.parametrize("status", [404, 500, 503])
async def test_error_status_is_down(make_executor, status: int) -> None:
    executor = make_executor(lambda request: httpx.Response(status))

    result = await executor.probe("https://example.com/")

    assert result.outcome == CheckOutcome.DOWN
    assert result.error_kind == ErrorKind.HTTP_STATUS
    assert result.status_code == status
    assert result.error == f"HTTP {status}"


async def test_redirects_are_followed(make_executor) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/old":
            return httpx.Response(301, headers={"Location": "/new"})
        return httpx.Response(200)

    executor = make_executor(handler)

    result = await executor.probe("https://example.com/old")

    assert result.is_up
    assert result.final_url == "https://example.com/new"


async def test_redirect_to_private_address_is_blocked_before_connecting(make_executor) -> None:
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(302, headers={"Location": "http://10.0.0.1/admin"})

    executor = make_executor(handler, requests)

    result = await executor.probe("https://example.com/")

    assert result.outcome == CheckOutcome.DOWN
    assert result.error_kind == ErrorKind.BLOCKED
    assert result.error.startswith("blocked: private_address")
    assert all(r.url.host == "example.com" for r in requests)


async def test_redirect_loop_is_capped(make_executor) -> None:
    executor = make_executor(lambda request: httpx.Response(302, headers={"Location": "/again"}))

    result = await executor.probe("https://example.com/", max_redirects=2)

    assert result.outcome == CheckOutcome.DOWN
    assert result.error_kind == ErrorKind.REDIRECT


async def test_timeout_has_no_latency(make_executor) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    executor = make_executor(handler)

    result = await executor.probe("https://example.com/", timeout=2)

    assert result.outcome == CheckOutcome.DOWN
    assert result.error_kind == ErrorKind.TIMEOUT
    assert result.latency_ms is None
    assert result.elapsed_ms <= 2000


async def test_connection_refused(make_executor) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    executor = make_executor(handler)

    result = await executor.probe("https://example.com/")

    assert result.error_kind == ErrorKind.CONNECTION
    assert result.latency_ms is None


async def test_fetch_page_follows_redirects_and_caps_body(make_executor) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/":
            return httpx.Response(301, headers={"Location": "/home"})
        return httpx.Response(200, text="<html>" + "x" * 5000 + "</html>", headers={"Content-Type": "text/html"})

    executor = make_executor(handler)

    page = await executor.fetch_page("https://example.com/", max_bytes=1024)

    assert page.status_code == 200
    assert page.final_url == "https://example.com/home"
    assert len(page.text) == 1024
    assert page.content_type.startswith("text/html")


async def test_fetch_page_rejects_unsafe_redirect(make_executor) -> None:
    executor = make_executor(lambda request: httpx.Response(302, headers={"Location": "http://localhost/"}))

    with pytest.raises(UnsafeTargetError):
        await executor.fetch_page("https://example.com/")


async def test_fetch_page_connection_failure(make_executor) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    executor = make_executor(handler)

    with pytest.raises(ProbeConnectionError):
        await executor.fetch_page("https://example.com/")


class _RecordingTransport:
    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs


def test_transport_dials_ipv4_only_without_ipv6_allowlist(monkeypatch, monitoring_settings) -> None:
    monkeypatch.setattr(httpx, "AsyncHTTPTransport", _RecordingTransport)
    executor = CheckExecutor(monitoring_settings, guard=OutboundSafetyGuard(SafetySettings()))

    transport = executor._build_transport(httpx.Limits())

    assert transport.kwargs["local_address"] == "0.0.0.0"
    assert transport.kwargs["verify"] == monitoring_settings.verify_ssl


def test_transport_left_to_httpx_when_ipv6_is_allowlisted(monitoring_settings) -> None:
    guard = OutboundSafetyGuard(SafetySettings(ipv6_allowlist=["2606:4700::/32"]))
    executor = CheckExecutor(monitoring_settings, guard=guard)

    assert executor._build_transport(httpx.Limits()) is None
