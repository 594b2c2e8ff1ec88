"""Provider interfaces and the standard provider errors."""

from __future__ import annotations

import abc
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping


class ProviderError(Exception):
    """Base class of all provider errors."""

    default_message = "provider error"

    def __init__(self, detail: object = None) -> None:
        self.detail = detail
        if detail is None:
            message = self.default_message
        else:
            message = f"{self.default_message}: {detail}"
        super().__init__(message)


class ProviderUnavailableError(ProviderError):
    """The provider service is unreachable or down."""

    default_message = "provider service is unavailable"


class InvalidInputError(ProviderError):
    """The input given to the provider is invalid."""

    default_message = "invalid input provided to provider"


class ProviderTimeoutError(ProviderError):
    """The provider operation timed out."""

    default_message = "provider operation timed out"


class RateLimitedError(ProviderError):
    """The provider is rate limiting requests."""

    default_message = "provider rate limit exceeded"


class UnauthorizedError(ProviderError):
    """Authentication or authorization with the provider failed."""

    default_message = "provider authentication failed"


class ProviderInternalError(ProviderError):
    """The provider failed internally."""

    default_message = "provider internal error"


def wrap_provider_error(error_class: type[ProviderError], detail: object = None) -> ProviderError:
    """Build an ``error_class`` instance describing ``detail``.

    When ``detail`` is an exception it becomes the cause of the new error.
    """
    if not (isinstance(error_class, type) and issubclass(error_class, ProviderError)):
        raise TypeError(f"{error_class!r} is not a ProviderError class")
    error = error_class(detail)
    if isinstance(detail, BaseException):
        error.__cause__ = detail
    return error


class ComputeProvider(abc.ABC):
    """Something that turns request data into a text response."""

    @abc.abstractmethod
    async def execute(self, request_data: Mapping[str, Any]) -> str:
        """Process a request and return the response text."""


class StreamingComputeProvider(ComputeProvider):
    """A compute provider that also handles bidirectional streams."""

    @abc.abstractmethod
    async def execute_stream(
        self,
        attributes: Mapping[str, str],
        incoming: AsyncIterator[bytes],
        outgoing: Callable[[bytes], Awaitable[None]],
    ) -> None:
        """Consume ``incoming`` chunks and emit results through ``outgoing``."""


class EmbeddingProvider(abc.ABC):
    """Something that turns text into a vector embedding."""

    @abc.abstractmethod
    async def create_embedding(self, text: str) -> list[float]:
        """Return the embedding of ``text``."""