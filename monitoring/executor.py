"""
============================================================================
UPTIME SENTINEL - CHECK EXECUTOR
============================================================================
Performs one availability probe against one URL and turns every possible
outcome into a structured ProbeResult. Never raises.

Strategy
--------
• HEAD first; retried once as GET when the server rejects HEAD (405/501)
• redirects followed manually, each hop re-validated by the safety guard
• 2xx-3xx → up; any other status, timeout, refused connection or TLS
  failure → down
• latency = dispatch → response headers (body never read), capped at
  the timeout on failure

The crawler additionally uses ``fetch_page`` for a guarded GET of the
page whose links it scans.

License: MIT
============================================================================
"""

import asyncio
import ssl
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import httpx

from config.constants import CheckOutcome, Defaults, ErrorKind, Limits
from config.settings import MonitoringSettings
from exceptions import ProbeConnectionError, ProbeTimeoutError, UnsafeTargetError
from monitoring.safety import OutboundSafetyGuard
from utils.helpers import StringHelper
from utils.logger import get_logger


logger = get_logger("CheckExecutor")

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})


# ============================================================================
# RESULT VALUE OBJECTS
# ============================================================================

class ProbeResult:
    """
    Value object carrying everything a single probe produced.

    ``latency_ms`` is None when no response was received;
    ``elapsed_ms`` is always set and never exceeds the timeout.
    """
    __slots__ = (
        "url", "outcome", "latency_ms", "elapsed_ms", "status_code",
        "error", "error_kind", "final_url", "method",
    )

    def __init__(
        self,
        url: str,
        outcome: CheckOutcome,
        elapsed_ms: float,
        latency_ms: Optional[float] = None,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None,
        final_url: Optional[str] = None,
        method: Optional[str] = None,
    ):
        self.url = url
        self.outcome = outcome
        self.elapsed_ms = elapsed_ms
        self.latency_ms = latency_ms
        self.status_code = status_code
        self.error = StringHelper.truncate(error, Limits.MAX_ERROR_LENGTH)
        self.error_kind = error_kind
        self.final_url = final_url or url
        self.method = method

    @property
    def is_up(self) -> bool:
        return self.outcome == CheckOutcome.UP

    @classmethod
    def blocked(cls, url: str, error: UnsafeTargetError) -> "ProbeResult":
        """Down result for a destination the guard refused; no request was made."""
        return cls(
            url=url,
            outcome=CheckOutcome.DOWN,
            elapsed_ms=0.0,
            error=f"{error.down_reason} ({error.message})",
            error_kind=ErrorKind.BLOCKED,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {slot: getattr(self, slot) for slot in self.__slots__}
        data["outcome"] = self.outcome.value
        data["error_kind"] = self.error_kind.value if self.error_kind else None
        return data

    def __repr__(self) -> str:
        return (
            f"<ProbeResult({self.outcome.value} {self.url} "
            f"status={self.status_code} error_kind={self.error_kind})>"
        )


@dataclass
class FetchedPage:
    """Body of a page fetched for link extraction."""

    url: str
    final_url: str
    status_code: int
    content_type: str
    text: str


# ============================================================================
# CHECK EXECUTOR
# ============================================================================

class CheckExecutor:
    """
    HTTP prober built on a shared ``httpx.AsyncClient``.

    Parameters
    ----------
    settings : MonitoringSettings
        Timeout, redirect limit, TLS verification and user agent.
    guard : OutboundSafetyGuard, optional
        Re-validates every redirect hop. Without one, redirects are
        followed unchecked (tests only).
    transport : httpx.AsyncBaseTransport, optional
        Custom transport, e.g. ``httpx.MockTransport`` in tests.
    """

    def __init__(
        self,
        settings: MonitoringSettings,
        guard: Optional[OutboundSafetyGuard] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.guard = guard
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    # ------------------------------------------------------------------
    # LIFECYCLE
    # ------------------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            limits = httpx.Limits(
                max_connections=max(10, self.settings.max_concurrent_checks * 2),
                max_keepalive_connections=self.settings.max_concurrent_checks,
            )
            self._client = httpx.AsyncClient(
                transport=self._transport or self._build_transport(limits),
                follow_redirects=False,
                verify=self.settings.verify_ssl,
                headers={"User-Agent": self.settings.user_agent or Defaults.USER_AGENT},
                limits=limits,
            )
        return self._client

    def _build_transport(self, limits: httpx.Limits) -> Optional[httpx.AsyncHTTPTransport]:
        """IPv4-only transport unless the guard allows IPv6 destinations."""
        if self.guard is None or not self.guard.ipv4_only:
            return None
        return httpx.AsyncHTTPTransport(
            verify=self.settings.verify_ssl,
            limits=limits,
            local_address="0.0.0.0",
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _clamp_timeout(self, timeout: Optional[float]) -> float:
        value = timeout if timeout is not None else self.settings.request_timeout
        return max(Limits.MIN_TIMEOUT, min(float(value), Limits.MAX_TIMEOUT))

    # ------------------------------------------------------------------
    # PROBE
    # ------------------------------------------------------------------

    async def probe(
        self,
        url: str,
        timeout: Optional[float] = None,
        max_redirects: Optional[int] = None,
    ) -> ProbeResult:
        """
        Probe ``url`` once and classify the outcome.

        Parameters
        ----------
        url : str
            Destination, already validated by the safety guard.
        timeout : float, optional
            Hard timeout in seconds for the whole probe, redirects included.
        max_redirects : int, optional
            Override of the configured redirect limit.

        Returns
        -------
        ProbeResult
            Always; failures are represented as ``down`` results.
        """
        timeout = self._clamp_timeout(timeout)
        limit = self.settings.max_redirects if max_redirects is None else max_redirects
        start = time.perf_counter()

        def elapsed_ms() -> float:
            return round(min((time.perf_counter() - start) * 1000, timeout * 1000), 1)

        try:
            return await asyncio.wait_for(
                self._follow(url, timeout, limit, start),
                timeout=timeout,
            )

        except (asyncio.TimeoutError, httpx.TimeoutException):
            return self._down(url, elapsed_ms(), f"Timed out after {timeout:g}s", ErrorKind.TIMEOUT)

        except UnsafeTargetError as e:
            return self._down(url, elapsed_ms(), f"{e.down_reason} ({e.message})", ErrorKind.BLOCKED)

        except httpx.ConnectError as e:
            kind = ErrorKind.TLS if self._is_tls_error(e) else ErrorKind.CONNECTION
            label = "TLS error" if kind == ErrorKind.TLS else "Connection error"
            return self._down(url, elapsed_ms(), f"{label}: {e}", kind)

        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return self._down(url, elapsed_ms(), f"{type(e).__name__}: {e}", ErrorKind.CONNECTION)

        except ssl.SSLError as e:
            return self._down(url, elapsed_ms(), f"TLS error: {e}", ErrorKind.TLS)

        except Exception as e:
            logger.exception(f"[Probe] unexpected failure for {url}: {e}")
            return self._down(url, elapsed_ms(), f"Unexpected error: {e}", ErrorKind.UNKNOWN)

    async def _follow(
        self,
        url: str,
        timeout: float,
        max_redirects: int,
        start: float,
    ) -> ProbeResult:
        client = self._get_client()
        current = url
        method = "HEAD"
        hops = 0

        while True:
            response = await client.send(
                client.build_request(method, current, timeout=httpx.Timeout(timeout)),
                stream=True,
            )
            latency = round((time.perf_counter() - start) * 1000, 1)
            await response.aclose()
            status = response.status_code

            if method == "HEAD" and status in Defaults.HEAD_FALLBACK_STATUSES:
                logger.debug(f"[Probe] {current} rejected HEAD ({status}), retrying with GET")
                method = "GET"
                continue

            location = response.headers.get("location")
            if status in REDIRECT_STATUSES and location:
                hops += 1
                if hops > max_redirects:
                    return ProbeResult(
                        url=url,
                        outcome=CheckOutcome.DOWN,
                        elapsed_ms=latency,
                        latency_ms=latency,
                        status_code=status,
                        error=f"Too many redirects (>{max_redirects})",
                        error_kind=ErrorKind.REDIRECT,
                        final_url=current,
                        method=method,
                    )

                current = urljoin(current, location)
                if self.guard is not None:
                    await self.guard.validate_url(current)
                if status == 303:
                    method = "GET"
                continue

            if 200 <= status < 400:
                logger.debug(f"[Probe] {url} → {status} in {latency:.0f}ms")
                return ProbeResult(
                    url=url,
                    outcome=CheckOutcome.UP,
                    elapsed_ms=latency,
                    latency_ms=latency,
                    status_code=status,
                    final_url=current,
                    method=method,
                )

            return ProbeResult(
                url=url,
                outcome=CheckOutcome.DOWN,
                elapsed_ms=latency,
                latency_ms=latency,
                status_code=status,
                error=f"HTTP {status}",
                error_kind=ErrorKind.HTTP_STATUS,
                final_url=current,
                method=method,
            )

    # ------------------------------------------------------------------
    # PAGE FETCH
    # ------------------------------------------------------------------

    async def fetch_page(
        self,
        url: str,
        timeout: Optional[float] = None,
        max_redirects: Optional[int] = None,
        max_bytes: int = Limits.MAX_PAGE_BYTES,
    ) -> FetchedPage:
        """
        GET a page body for link extraction.

        Redirect hops are validated like in ``probe``. The body is read
        up to ``max_bytes``.

        Raises
        ------
        UnsafeTargetError
            A redirect hop was rejected by the guard.
        ProbeTimeoutError, ProbeConnectionError
            The page could not be fetched.
        """
        timeout = self._clamp_timeout(timeout)
        limit = self.settings.max_redirects if max_redirects is None else max_redirects

        try:
            return await asyncio.wait_for(
                self._fetch(url, timeout, limit, max_bytes),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise ProbeTimeoutError(
                f"Fetching {url} timed out after {timeout:g}s",
                timeout=timeout,
                url=url,
                cause=e,
            )
        except (httpx.HTTPError, httpx.InvalidURL, ssl.SSLError) as e:
            raise ProbeConnectionError(
                f"Fetching {url} failed: {e}",
                error_type=type(e).__name__,
                url=url,
                cause=e,
            )

    async def _fetch(self, url: str, timeout: float, max_redirects: int, max_bytes: int) -> FetchedPage:
        client = self._get_client()
        current = url

        for _ in range(max_redirects + 1):
            async with client.stream(
                "GET",
                current,
                timeout=httpx.Timeout(timeout),
                headers={"Accept": "text/html,application/xhtml+xml"},
            ) as response:
                location = response.headers.get("location")
                if response.status_code in REDIRECT_STATUSES and location:
                    current = urljoin(current, location)
                    if self.guard is not None:
                        await self.guard.validate_url(current)
                    continue

                chunks = []
                size = 0
                async for chunk in response.aiter_bytes():
                    chunks.append(chunk)
                    size += len(chunk)
                    if size >= max_bytes:
                        break

                body = b"".join(chunks)[:max_bytes]
                try:
                    text = body.decode(response.charset_encoding or "utf-8", errors="replace")
                except LookupError:
                    text = body.decode("utf-8", errors="replace")

                return FetchedPage(
                    url=url,
                    final_url=current,
                    status_code=response.status_code,
                    content_type=response.headers.get("content-type", ""),
                    text=text,
                )

        raise ProbeConnectionError(
            f"Too many redirects fetching {url}",
            error_type="TooManyRedirects",
            url=url,
        )

    # ------------------------------------------------------------------
    # HELPERS
    # ------------------------------------------------------------------

    @staticmethod
    def _down(url: str, elapsed: float, error: str, kind: ErrorKind) -> ProbeResult:
        logger.debug(f"[Probe] {url} ✗ {kind.value}: {error}")
        return ProbeResult(
            url=url,
            outcome=CheckOutcome.DOWN,
            elapsed_ms=elapsed,
            latency_ms=None,
            error=error,
            error_kind=kind,
        )

    @staticmethod
    def _is_tls_error(error: BaseException) -> bool:
        cause = error.__cause__ or error.__context__
        if isinstance(cause, ssl.SSLError):
            return True
        text = str(error).lower()
        return "ssl" in text or "certificate" in text or "tls" in text
