"""Provider availability storage.

Availability is a heuristic derived from the most recent attempt against a
provider. Writes carry the attempt number they belong to, and a backend keeps
the newest one, so a slow call that started earlier cannot overwrite the
outcome of a call that started later.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from ai_gateway.types import ProviderStatus


@runtime_checkable
class StatusBackend(Protocol):
    """Pluggable store for provider status (e.g. a shared TTL cache across processes)."""

    def get(self, provider: str) -> ProviderStatus | None:
        ...

    def set(self, status: ProviderStatus) -> bool:
        """Store ``status`` unless a newer attempt is already recorded. Return whether it was stored."""
        ...

    def clear(self, provider: str) -> None:
        ...

    def all(self) -> list[ProviderStatus]:
        ...


class InMemoryStatusBackend:
    """Process-local backend with compare-and-set on the attempt number."""

    def __init__(self) -> None:
        self._statuses: dict[str, ProviderStatus] = {}

    def get(self, provider: str) -> ProviderStatus | None:
        return self._statuses.get(provider)

    def set(self, status: ProviderStatus) -> bool:
        current = self._statuses.get(status.provider)
        if current is not None and current.attempt > status.attempt:
            return False
        self._statuses[status.provider] = status
        return True

    def clear(self, provider: str) -> None:
        self._statuses.pop(provider, None)

    def all(self) -> list[ProviderStatus]:
        return list(self._statuses.values())
