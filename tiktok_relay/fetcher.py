"""
Byte fetching with retry and proxy escalation.

Attempt ``i`` uses the highest rung of the strategy ladder at or below ``i``
that applies to the URL, so the ladder order is the escalation order and
attempts past its end keep using the last applicable rung.
"""

import asyncio
import logging
import time

import requests

from . import config
from .media import FetchFailed, FetchResult, MediaDownloadError, MediaTooLarge, normalize_reason
from .net import build_http_session, fill_url_template, host_matches, url_host

logger = logging.getLogger("tiktok-relay.fetcher")

MEDIA_HEADERS = {
    "Accept": "video/webm,video/mp4,video/*;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
    "Referer": f"{config.PLATFORM_ORIGIN}/",
    "Origin": config.PLATFORM_ORIGIN,
}
PROXY_HEADERS = {
    "Accept": "*/*",
    "Referer": None,
}


class FetchStrategy:
    name = "direct"

    def applies(self, url: str) -> bool:
        return True

    def requests_for(self, url: str, headers: dict | None = None) -> list[tuple[str, dict]]:
        return [(url, {**MEDIA_HEADERS, **(headers or {})})]


class DirectStrategy(FetchStrategy):
    pass


class ProxyStrategy(FetchStrategy):
    """A generic read-through proxy addressed by a ``{URL}`` template."""

    name = "generic-proxy"

    def __init__(self, template: str):
        self.template = template

    def applies(self, url: str) -> bool:
        return bool(self.template)

    def requests_for(self, url: str, headers: dict | None = None) -> list[tuple[str, dict]]:
        # extraction headers carry cookies and never go to a third-party proxy
        return [(fill_url_template(self.template, url), PROXY_HEADERS)]


class ProxyListStrategy(FetchStrategy):
    """Platform-specialized proxies, only for the platform's media CDN hosts."""

    name = "specialized-proxy"

    def __init__(self, templates: list[str], host_suffixes: list[str]):
        self.templates = list(templates)
        self.host_suffixes = list(host_suffixes)

    def applies(self, url: str) -> bool:
        return bool(self.templates) and host_matches(url, self.host_suffixes)

    def requests_for(self, url: str, headers: dict | None = None) -> list[tuple[str, dict]]:
        return [(fill_url_template(template, url), PROXY_HEADERS) for template in self.templates]


def default_strategies() -> list[FetchStrategy]:
    return [
        DirectStrategy(),
        ProxyStrategy(config.GENERIC_PROXY_URL),
        ProxyListStrategy(config.CDN_PROXY_URLS, config.CDN_HOST_SUFFIXES),
    ]


class MediaFetcher:
    def __init__(
        self,
        session: requests.Session | None = None,
        strategies: list[FetchStrategy] | None = None,
        max_attempts: int = config.DOWNLOAD_RETRY_ATTEMPTS,
        base_delay: float = config.RETRY_PAUSE_SECONDS,
        attempt_timeout: float = config.FETCH_TIMEOUT_SECONDS,
        max_bytes: int = config.MAX_BOT_FILE_BYTES,
        clock=time.monotonic,
    ):
        self.session = session or build_http_session()
        self.strategies = strategies if strategies is not None else default_strategies()
        if not self.strategies:
            raise ValueError("At least one fetch strategy is required")
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.attempt_timeout = attempt_timeout
        self.max_bytes = max_bytes
        self.clock = clock

    def _strategy_for(self, url: str, attempt: int) -> FetchStrategy:
        applicable = [strategy for strategy in self.strategies[: attempt + 1] if strategy.applies(url)]
        return applicable[-1] if applicable else self.strategies[0]

    def _time_left(self, deadline: float) -> float:
        remaining = deadline - self.clock()
        if remaining <= 0:
            raise TimeoutError(f"attempt exceeded {self.attempt_timeout:g}s")
        return remaining

    def _download(self, source_url: str, request_url: str, headers: dict, deadline: float) -> bytes:
        timeout = self._time_left(deadline)
        with self.session.get(request_url, headers=headers, timeout=timeout, stream=True) as response:
            if not 200 <= response.status_code < 300:
                raise MediaDownloadError(f"HTTP {response.status_code} from {url_host(request_url)}")
            declared_size = str(response.headers.get("Content-Length") or "")
            if declared_size.isdigit() and int(declared_size) > self.max_bytes:
                raise MediaTooLarge(source_url, "media is too large for Telegram")
            buffer = bytearray()
            for chunk in response.iter_content(chunk_size=64 * 1024):
                if not chunk:
                    continue
                buffer.extend(chunk)
                if len(buffer) > self.max_bytes:
                    raise MediaTooLarge(source_url, "media is too large for Telegram")
                self._time_left(deadline)
        if not buffer:
            raise MediaDownloadError(f"empty body from {url_host(request_url)}")
        return bytes(buffer)

    def _run_strategy(self, strategy: FetchStrategy, url: str, headers: dict | None = None) -> bytes:
        # one budget per attempt, shared by every request the rung makes
        deadline = self.clock() + self.attempt_timeout
        last_err: Exception | None = None
        for request_url, request_headers in strategy.requests_for(url, headers):
            try:
                return self._download(url, request_url, request_headers, deadline)
            except MediaTooLarge:
                raise
            except (OSError, MediaDownloadError) as err:
                last_err = err
                logger.info("Fetch request failed: strategy=%s host=%s err=%s", strategy.name, url_host(request_url), err)
        if last_err is None:
            raise MediaDownloadError(f"{strategy.name} produced no request")
        raise last_err

    async def fetch(self, url: str, headers: dict | None = None) -> FetchResult:
        last_reason = "no attempt made"
        for attempt in range(self.max_attempts):
            if attempt > 0 and self.base_delay > 0:
                await asyncio.sleep(self.base_delay * attempt)
            strategy = self._strategy_for(url, attempt)
            try:
                data = await asyncio.to_thread(self._run_strategy, strategy, url, headers)
            except MediaTooLarge:
                raise
            except (OSError, MediaDownloadError) as err:
                last_reason = normalize_reason(f"{strategy.name}: {err}")
                logger.info(
                    "Fetch attempt failed: attempt=%s/%s strategy=%s url=%s reason=%s",
                    attempt + 1,
                    self.max_attempts,
                    strategy.name,
                    url,
                    last_reason,
                )
                continue
            logger.info(
                "Media fetched: strategy=%s attempt=%s size_bytes=%s host=%s",
                strategy.name,
                attempt + 1,
                len(data),
                url_host(url),
            )
            return FetchResult(data=data, strategy=strategy.name, url=url, attempt=attempt)
        raise FetchFailed(url, last_reason)

    async def fetch_bytes(self, url: str, headers: dict | None = None) -> bytes:
        return (await self.fetch(url, headers)).data
