"""Backend protocol: one normalized completion operation per LLM vendor."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from dealchat.backends.models import (
        BackendResponse,
        CompletionRequest,
        StreamHandle,
    )


@runtime_checkable
class Backend(Protocol):
    """Minimal backend protocol: complete, aclose."""

    @property
    def name(self) -> str:
        """Stable backend identifier (``openai``, ``gemini``, ...)."""
        ...

    async def complete(
        self, request: CompletionRequest
    ) -> BackendResponse | StreamHandle:
        """Run a completion.

        Returns a :class:`BackendResponse` when ``request.stream`` is false,
        otherwise a verified :class:`StreamHandle`. Raises
        :class:`dealchat.errors.BackendError` for every failure.
        """
        ...

    async def aclose(self) -> None:
        """Close underlying client resources."""
        ...
