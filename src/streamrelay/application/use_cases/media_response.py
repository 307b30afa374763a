"""Transport-neutral result of a proxy use case."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field


@dataclass
class MediaResponse:
    """Status, headers and either a buffered body or a byte stream.

    Exactly one of ``body`` / ``stream`` is set.  A stream closes its
    upstream connection when exhausted or when the consumer closes it.
    """

    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None
    stream: AsyncIterator[bytes] | None = None

    @property
    def is_streaming(self) -> bool:
        return self.stream is not None
