"""Network fetch boundary for remote formula bundles."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from formula_orchestrator.errors import NetworkError

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_USER_AGENT = "formula-orchestrator/0.1"


@dataclass(frozen=True, slots=True)
class FetchResponse:
    status: int
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@runtime_checkable
class Fetcher(Protocol):
    async def fetch(self, url: str) -> FetchResponse: ...


class HttpxFetcher:
    """``Fetcher`` backed by ``httpx.AsyncClient``.

    Non-2xx responses and transport failures raise ``NetworkError``.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        follow_redirects: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Any | None = None,
    ) -> None:
        self._timeout = httpx.Timeout(timeout_seconds)
        self._headers = {"User-Agent": user_agent}
        self._follow_redirects = follow_redirects
        self._transport = transport
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def fetch(self, url: str) -> FetchResponse:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                headers=self._headers,
                follow_redirects=self._follow_redirects,
                transport=self._transport,
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            self._logger.warning("bundle_fetch_failed", url=url, error=str(exc))
            raise NetworkError(f"fetch failed: {type(exc).__name__}: {exc}", url=url) from exc

        result = FetchResponse(status=response.status_code, text=response.text)
        if not result.ok:
            self._logger.warning("bundle_fetch_rejected", url=url, status=result.status)
            raise NetworkError(
                f"fetch returned HTTP {result.status}",
                url=url,
                status=result.status,
            )
        self._logger.debug("bundle_fetch_completed", url=url, status=result.status, chars=len(result.text))
        return result


def ensure_success(response: FetchResponse, url: str) -> FetchResponse:
    """Raise ``NetworkError`` for responses from fetchers that do not check status."""

    if not response.ok:
        raise NetworkError(f"fetch returned HTTP {response.status}", url=url, status=response.status)
    return response


__all__ = ["DEFAULT_USER_AGENT", "FetchResponse", "Fetcher", "HttpxFetcher", "ensure_success"]
