"""Package specific exception hierarchy."""


class GatewayError(Exception):
    """Base exception for ai_gateway package."""


class ConfigurationError(GatewayError):
    """Raised when an adapter cannot be built from its configuration."""


class UnsupportedProviderError(GatewayError):
    """Raised when a provider has not been configured."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"Provider '{provider}' is not available.")
        self.provider = provider


class UnsupportedFeatureError(GatewayError):
    """Raised when a requested feature is unsupported by a model."""

    def __init__(self, feature: str) -> None:
        super().__init__(f"Feature '{feature}' is not supported.")
        self.feature = feature


class ProviderError(GatewayError):
    """Represents provider-specific HTTP or API errors."""

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        suffix = f" (status {status_code})" if status_code is not None else ""
        super().__init__(f"{provider}: {message}{suffix}")
        self.provider = provider
        self.status_code = status_code


class ToolArgumentsError(GatewayError):
    """Raised when a finished tool call does not carry a JSON object."""

    def __init__(self, provider: str, tool: str, raw: str) -> None:
        super().__init__(f"{provider}: invalid arguments for tool '{tool}': {raw!r}")
        self.provider = provider
        self.tool = tool
        self.raw = raw


class StreamCancelledError(GatewayError):
    """Raised inside a stream once the caller's cancel signal is set."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"{provider}: stream cancelled by caller")
        self.provider = provider


class AllProvidersFailedError(GatewayError):
    """Raised when every provider in the failover order was skipped or failed."""

    def __init__(self, last_error: BaseException | None = None) -> None:
        message = str(last_error) if last_error is not None else "Unknown error"
        super().__init__(f"All providers failed. Last error: {message}")
        self.last_error = last_error


class StreamCallbackError(GatewayError):
    """Raised when a caller-supplied stream callback fails. Never failed over."""

    def __init__(self, callback: str, error: BaseException) -> None:
        super().__init__(f"Stream callback {callback} raised {type(error).__name__}: {error}")
        self.callback = callback
        self.error = error
