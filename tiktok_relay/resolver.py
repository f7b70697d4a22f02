import asyncio
import dataclasses
import logging

from . import config
from .media import MediaSet, ProviderAttempt, ProviderFailure, normalize_reason
from .providers import ProviderAdapter, build_adapters

logger = logging.getLogger("tiktok-relay.resolver")


class Resolver:
    """Tries provider adapters in priority order; the first non-empty MediaSet wins."""

    def __init__(self, adapters: list[ProviderAdapter], attempt_timeout: float = config.PROVIDER_TIMEOUT_SECONDS):
        if not adapters:
            raise ValueError("At least one provider adapter is required")
        self.adapters = list(adapters)
        self.attempt_timeout = attempt_timeout

    async def resolve_link(self, link: str) -> MediaSet:
        attempts: list[ProviderAttempt] = []
        for order, adapter in enumerate(self.adapters, start=1):
            try:
                outcome = await asyncio.wait_for(adapter.resolve(link), timeout=self.attempt_timeout)
            except asyncio.TimeoutError:
                attempts.append(
                    ProviderAttempt(adapter.name, order, "timeout", f"timed out after {self.attempt_timeout:g}s")
                )
                logger.warning("Provider timed out: provider=%s link=%s", adapter.name, link)
                continue
            except Exception as err:
                reason = normalize_reason(f"{type(err).__name__}: {err}")
                attempts.append(ProviderAttempt(adapter.name, order, "error", reason))
                logger.exception("Provider crashed: provider=%s link=%s", adapter.name, link)
                continue

            if isinstance(outcome, ProviderFailure):
                attempts.append(ProviderAttempt(adapter.name, order, "failure", outcome.reason))
                logger.info("Provider failed: provider=%s link=%s reason=%s", adapter.name, link, outcome.reason)
                continue
            if not outcome.items:
                attempts.append(ProviderAttempt(adapter.name, order, "failure", "no media"))
                continue

            attempts.append(ProviderAttempt(adapter.name, order, "success"))
            return dataclasses.replace(outcome, provider=adapter.name, error=None, attempts=tuple(attempts))

        reason = "; ".join(f"{attempt.provider}: {attempt.reason}" for attempt in attempts)
        logger.warning("All providers failed: link=%s reasons=%s", link, reason)
        return MediaSet(original_link=link, error=reason, attempts=tuple(attempts))


def build_resolver(priority: list[str] | None = None, session=None) -> Resolver:
    return Resolver(build_adapters(priority, session))
