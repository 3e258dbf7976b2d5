"""Failover orchestration across configured provider adapters."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime

from ai_gateway.config import FailoverConfig, ProviderConfig
from ai_gateway.errors import (
    AllProvidersFailedError,
    GatewayError,
    StreamCallbackError,
    StreamCancelledError,
    UnsupportedProviderError,
)
from ai_gateway.ledger import UsageLedger, UsageSink, UsageStats
from ai_gateway.providers import PROVIDER_FACTORIES, BaseProvider, HTTPProvider
from ai_gateway.status import InMemoryStatusBackend, StatusBackend
from ai_gateway.streaming import StreamHandler
from ai_gateway.types import (
    CompletionOptions,
    CompletionResult,
    ProviderStatus,
    StreamChunk,
    UsageRecord,
)

logger = logging.getLogger(__name__)


@dataclass
class _StreamAttempt:
    result: CompletionResult | None = None
    error: BaseException | None = None
    emitted: bool = False


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000


class ProviderManager:
    """Routes completions through an ordered list of providers with failover.

    Each call walks the provider order, skips providers currently marked
    unavailable and returns the first success. Usage for every successful call
    goes to the ledger; availability is updated after every attempt.
    """

    def __init__(
        self,
        configs: Mapping[str, ProviderConfig | dict] | None = None,
        *,
        adapters: Mapping[str, BaseProvider] | None = None,
        failover: FailoverConfig | None = None,
        on_usage_record: UsageSink | None = None,
        status_backend: StatusBackend | None = None,
        factories: Mapping[str, type[HTTPProvider]] | None = None,
    ) -> None:
        self._adapters: dict[str, BaseProvider] = {}
        self._status = status_backend if status_backend is not None else InMemoryStatusBackend()
        self._failover = failover
        self._attempts = itertools.count(1)
        self.ledger = UsageLedger(on_usage_record)

        factories = PROVIDER_FACTORIES if factories is None else factories
        for name, config in (configs or {}).items():
            self._initialize_provider(name, config, factories)
        for name, adapter in (adapters or {}).items():
            self.register(name, adapter)

    def _initialize_provider(
        self,
        name: str,
        config: ProviderConfig | dict,
        factories: Mapping[str, type[HTTPProvider]],
    ) -> None:
        try:
            factory = factories.get(name)
            if factory is None:
                raise UnsupportedProviderError(name)
            if not isinstance(config, ProviderConfig):
                config = ProviderConfig.model_validate(config)
            adapter = factory.from_config(config)
        except (GatewayError, ValueError) as exc:
            logger.warning("Failed to initialize provider %s: %s", name, exc)
            self._write_status(name, False, str(exc))
            return
        self.register(name, adapter)

    def register(self, name: str, adapter: BaseProvider) -> None:
        """Add a ready-made adapter and mark it available."""
        self._adapters[name] = adapter
        self._write_status(name, True)

    def get_provider(self, name: str) -> BaseProvider:
        """Return a provider by its registered name."""
        try:
            return self._adapters[name]
        except KeyError as exc:
            raise UnsupportedProviderError(name) from exc

    def get_provider_order(self, preferred: str | None = None) -> list[str]:
        """Compute the sequence of providers to attempt for one call."""
        if self._failover is None:
            if preferred is not None and preferred in self._adapters:
                return [preferred]
            return list(self._adapters)

        order = list(self._failover.providers)
        if preferred is not None and preferred in order:
            order.remove(preferred)
            order.insert(0, preferred)
        return order

    async def complete(self, options: CompletionOptions, preferred: str | None = None) -> CompletionResult:
        """Return the first successful completion along the provider order."""
        last_error: BaseException | None = None

        for name in self.get_provider_order(preferred):
            adapter = self._adapters.get(name)
            if adapter is None or not self.is_provider_available(name):
                continue

            attempt = next(self._attempts)
            started = time.monotonic()
            call_options = self._options_for(name, adapter, options)
            logger.info("Attempting completion with %s (%s)", name, call_options.model)
            try:
                result = await adapter.complete(call_options)
                if result.finish_reason == "error":
                    raise GatewayError(result.error or "Unknown error")
            except Exception as exc:
                logger.warning("Provider %s failed: %s", name, exc)
                last_error = exc
                self._write_status(name, False, str(exc), attempt=attempt, latency_ms=_elapsed_ms(started))
                continue

            await self._record_usage(name, call_options, result)
            self._write_status(name, True, attempt=attempt, latency_ms=_elapsed_ms(started))
            return result

        raise AllProvidersFailedError(last_error)

    async def stream(
        self,
        options: CompletionOptions,
        handler: StreamHandler,
        preferred: str | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """Stream from the first provider that completes.

        A provider that fails mid-stream may already have forwarded chunks.
        Before the next provider starts over, a ``restart`` chunk tells the
        caller to discard that partial output.
        """
        last_error: BaseException | None = None
        partial = False

        for name in self.get_provider_order(preferred):
            adapter = self._adapters.get(name)
            if adapter is None or not self.is_provider_available(name):
                continue

            if partial:
                await handler.chunk(StreamChunk(type="restart", provider=name))

            attempt = next(self._attempts)
            started = time.monotonic()
            call_options = self._options_for(name, adapter, options)
            outcome = _StreamAttempt()
            wrapped = self._wrap_handler(name, call_options, handler, outcome, attempt, started)
            logger.info("Attempting stream with %s (%s)", name, call_options.model)
            try:
                await adapter.stream(call_options, wrapped, cancel=cancel)
            except StreamCallbackError:
                raise
            except Exception as exc:
                if outcome.result is not None:
                    raise
                await wrapped.error(exc)

            if outcome.result is not None:
                return
            if outcome.error is None:
                await wrapped.error(GatewayError(f"{name}: stream ended without a result"))
            if isinstance(outcome.error, StreamCancelledError):
                await handler.error(outcome.error)
                return

            logger.warning("Provider %s failed while streaming: %s", name, outcome.error)
            last_error = outcome.error
            partial = outcome.emitted

        failure = AllProvidersFailedError(last_error)
        await handler.chunk(StreamChunk(type="error", error=str(failure)))
        await handler.error(failure)
        raise failure

    def _wrap_handler(
        self,
        name: str,
        options: CompletionOptions,
        handler: StreamHandler,
        outcome: _StreamAttempt,
        attempt: int,
        started: float,
    ) -> StreamHandler:
        async def on_chunk(chunk: StreamChunk) -> None:
            # vendor errors surface only through the aggregate error
            if chunk.type == "error":
                return
            outcome.emitted = True
            await handler.chunk(chunk)

        async def on_complete(result: CompletionResult) -> None:
            outcome.result = result
            await self._record_usage(name, options, result)
            self._write_status(name, True, attempt=attempt, latency_ms=_elapsed_ms(started))
            await handler.complete(result)

        async def on_error(exc: BaseException) -> None:
            outcome.error = exc
            if not isinstance(exc, StreamCancelledError):
                self._write_status(name, False, str(exc), attempt=attempt, latency_ms=_elapsed_ms(started))

        return StreamHandler(on_chunk=on_chunk, on_complete=on_complete, on_error=on_error)

    def _options_for(self, name: str, adapter: BaseProvider, options: CompletionOptions) -> CompletionOptions:
        """Swap in the provider's fallback model when it does not serve the requested one."""
        if self._failover is None:
            return options
        fallback = self._failover.fallback_models.get(name)
        if fallback is None or fallback == options.model or adapter.model_info(options.model) is not None:
            return options
        logger.info("Using fallback model %s for %s instead of %s", fallback, name, options.model)
        return options.model_copy(update={"model": fallback})

    async def _record_usage(self, name: str, options: CompletionOptions, result: CompletionResult) -> None:
        await self.ledger.record(
            UsageRecord(
                user_id=options.user_id or "anonymous",
                provider=name,
                model=result.model,
                prompt_tokens=result.usage.prompt_tokens,
                completion_tokens=result.usage.completion_tokens,
                total_tokens=result.usage.total_tokens,
                cost=result.usage.cost,
                purpose=options.purpose,
                metadata=options.metadata,
            )
        )

    def _write_status(
        self,
        name: str,
        available: bool,
        error: str | None = None,
        *,
        attempt: int | None = None,
        latency_ms: float | None = None,
    ) -> None:
        status = ProviderStatus(
            provider=name,
            available=available,
            error=None if available else error,
            latency_ms=latency_ms,
            attempt=next(self._attempts) if attempt is None else attempt,
        )
        if not self._status.set(status):
            logger.debug("Discarded stale status for %s from attempt %d", name, status.attempt)

    def get_provider_status(self, name: str) -> ProviderStatus | None:
        return self._status.get(name)

    def get_all_provider_statuses(self) -> list[ProviderStatus]:
        return self._status.all()

    def is_provider_available(self, name: str) -> bool:
        status = self._status.get(name)
        return status is not None and status.available

    def get_available_providers(self) -> list[str]:
        return [s.provider for s in self._status.all() if s.available]

    def reset_provider(self, name: str) -> None:
        """Forget the recorded outcome and mark a registered provider available again."""
        self._status.clear(name)
        if name in self._adapters:
            self._write_status(name, True)
        logger.info("Reset status for provider: %s", name)

    async def validate_all_providers(self) -> dict[str, bool]:
        """Probe every adapter with a minimal request and refresh its status."""
        results: dict[str, bool] = {}
        for name, adapter in self._adapters.items():
            valid = await adapter.validate_config()
            results[name] = valid
            self._write_status(name, valid, None if valid else "Validation failed")
        return results

    def get_usage_records(
        self,
        *,
        user_id: str | None = None,
        provider: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[UsageRecord]:
        return self.ledger.records(user_id=user_id, provider=provider, start=start, end=end)

    def get_usage_stats(
        self,
        *,
        user_id: str | None = None,
        provider: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> UsageStats:
        return self.ledger.stats(user_id=user_id, provider=provider, start=start, end=end)

    async def aclose(self) -> None:
        """Close every adapter's HTTP client."""
        for adapter in self._adapters.values():
            await adapter.aclose()
