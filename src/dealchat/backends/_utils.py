"""Shared translation helpers for backend implementations."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from dealchat.errors import StreamError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from dealchat.backends.models import ChatMessage


def split_system(
    messages: Sequence[ChatMessage],
) -> tuple[str | None, list[ChatMessage]]:
    """Separate system messages for backends that take them out-of-band.

    Every system message is folded into one instruction string; the remaining
    turns keep their order.
    """
    system_parts: list[str] = []
    rest: list[ChatMessage] = []
    for message in messages:
        if message.role == "system":
            if message.content:
                system_parts.append(message.content)
        else:
            rest.append(message)
    return ("\n\n".join(system_parts) if system_parts else None), rest


def ensure_async_iterable(stream: Any, *, backend: str, model: str) -> Any:
    """Fail fast when a backend hands back something that cannot be streamed."""
    if stream is None or not callable(getattr(stream, "__aiter__", None)):
        raise StreamError(
            f"{backend} returned a non-iterable stream for {model}",
            backend=backend,
            phase="stream",
            hint="The SDK may not support streaming for this model.",
        )
    return stream


def estimate_tokens(text: str | None) -> int:
    """Rough token count (4 characters per token) for SDKs that omit usage."""
    if not text:
        return 0
    return max(1, len(text) // 4)


def parse_arguments(arguments: str | None) -> dict[str, Any]:
    """Decode tool-call arguments, tolerating empty or malformed JSON."""
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
