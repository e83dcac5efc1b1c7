"""Concurrent latency probing for endpoint candidates.

One probe runs per URL, each bounded by its own timeout. Failures of any kind
are recorded on that URL's ``ProbeResult``; they never abort sibling probes.
The engine keeps no state between calls.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Iterable, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict

from provswitch import __version__
from provswitch.core.endpoints import normalize
from provswitch.utils.log import get_logger

logger = get_logger()

NO_RESULT_ERROR = "No result"


class ProbeResult(BaseModel):
    """Outcome of probing one URL.

    ``latency_ms`` is None both before testing and after a failure; the two
    are told apart by ``error``.
    """

    model_config = ConfigDict(frozen=True)

    url: str
    latency_ms: Optional[int] = None
    http_status: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.latency_ms is not None

    @property
    def tested(self) -> bool:
        return self.latency_ms is not None or self.error is not None


class ProbeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: int
    elapsed_ms: float


class ProbeTransportError(Exception):
    """Network-level failure reported by a probe transport."""


class ProbeTimeoutError(ProbeTransportError):
    """The transport gave up waiting for a response."""


class ProbeTransport(Protocol):
    def __call__(self, url: str, timeout_s: float) -> Awaitable[ProbeResponse]: ...


class HttpxProbeTransport:
    """Issue one GET per probe, timed on the event loop clock."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "HttpxProbeTransport":
        if self._client is None:
            self._client = httpx.AsyncClient(
                follow_redirects=False,
                headers={"User-Agent": f"provswitch/{__version__}"},
            )
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __call__(self, url: str, timeout_s: float) -> ProbeResponse:
        if self._client is None:
            raise RuntimeError("HttpxProbeTransport must be used as an async context manager.")
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            response = await self._client.get(url, timeout=timeout_s)
        except httpx.TimeoutException as exc:
            raise ProbeTimeoutError(str(exc) or type(exc).__name__) from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise ProbeTransportError(str(exc) or type(exc).__name__) from exc
        elapsed_ms = (loop.time() - started) * 1000
        return ProbeResponse(status=response.status_code, elapsed_ms=elapsed_ms)


def _result_from_response(url: str, response: ProbeResponse) -> ProbeResult:
    if response.status >= 500:
        return ProbeResult(url=url, http_status=response.status, error=f"HTTP {response.status}")
    return ProbeResult(
        url=url,
        latency_ms=round(response.elapsed_ms),
        http_status=response.status,
    )


async def _timed_call(transport: ProbeTransport, url: str, timeout_s: float) -> ProbeResponse:
    async with asyncio.timeout(timeout_s):
        return await transport(url, timeout_s)


async def _probe_one(
    transport: ProbeTransport,
    url: str,
    timeout_ms: int,
    warmup: bool,
) -> ProbeResult:
    timeout_s = timeout_ms / 1000
    if warmup:
        # First request only primes DNS/TLS; its outcome is not measured.
        try:
            await _timed_call(transport, url, timeout_s)
        except Exception as exc:
            logger.debug(
                "[speedtest] Warm-up request failed",
                extra={"url": url, "error": f"{type(exc).__name__}: {exc}"},
            )

    try:
        response = await _timed_call(transport, url, timeout_s)
    except (ProbeTimeoutError, TimeoutError):
        return ProbeResult(url=url, error=f"Request timed out after {timeout_ms} ms")
    except ProbeTransportError as exc:
        return ProbeResult(url=url, error=f"Connection failed: {exc}")
    except Exception as exc:
        logger.exception(
            "[speedtest] Probe transport raised unexpectedly",
            extra={"url": url},
        )
        return ProbeResult(url=url, error=f"{type(exc).__name__}: {exc}")

    return _result_from_response(url, response)


def _unique_urls(urls: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for raw in urls:
        url = normalize(raw)
        if url:
            seen.setdefault(url, None)
    return list(seen)


async def probe(
    urls: Iterable[str],
    timeout_ms: int,
    transport: Optional[ProbeTransport] = None,
    *,
    warmup: bool = False,
) -> list[ProbeResult]:
    """Probe every URL concurrently and return one result per unique URL.

    ``timeout_ms`` applies to each URL independently; callers pick it per
    application family.
    """
    targets = _unique_urls(urls)
    if not targets:
        return []
    if timeout_ms <= 0:
        raise ValueError("timeout_ms must be positive")

    logger.debug(
        "[speedtest] Starting probe round",
        extra={"count": len(targets), "timeout_ms": timeout_ms, "warmup": warmup},
    )

    if transport is None:
        async with HttpxProbeTransport() as http_transport:
            results = await asyncio.gather(
                *(_probe_one(http_transport, url, timeout_ms, warmup) for url in targets)
            )
    else:
        results = await asyncio.gather(
            *(_probe_one(transport, url, timeout_ms, warmup) for url in targets)
        )

    logger.debug(
        "[speedtest] Probe round finished",
        extra={
            "count": len(results),
            "succeeded": sum(1 for r in results if r.ok),
        },
    )
    return list(results)

