from __future__ import annotations

from typing import Optional


class UpstreamError(RuntimeError):
    """Market-data request failed: bad status, malformed payload or network error."""

    def __init__(self, message: str, *, status: Optional[int] = None, body: str = ""):
        self.status = status
        self.body = body[:500]
        super().__init__(message)
