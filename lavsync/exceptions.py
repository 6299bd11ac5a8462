#!/usr/bin/env python3
"""
Exception classes for the lavalier audio sync core.

Only the decode and option-validation paths raise; estimators report
failure through a zero-confidence result instead.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class LavSyncException(Exception):
    """Base exception for sync core errors."""

    def __init__(
        self,
        detail: str,
        error_code: str = "UNKNOWN_ERROR",
        timestamp: Optional[datetime] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.detail = detail
        self.error_code = error_code
        self.timestamp = timestamp or datetime.now(timezone.utc)
        self.context = context or {}

        logger.debug(
            f"{type(self).__name__}: {error_code} - {detail}",
            extra={"error_code": error_code, "context": self.context},
        )

        super().__init__(detail)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.detail,
            "error_code": self.error_code,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
        }


class InputInvalidError(LavSyncException):
    """Raised when PCM input or durations violate the core's invariants."""

    def __init__(self, detail: str, **kwargs):
        super().__init__(detail=detail, error_code="INPUT_INVALID", **kwargs)


class DecodeError(LavSyncException):
    """Raised by decoders when a media reference cannot be turned into PCM."""

    code = "DECODE_INTERNAL"

    def __init__(self, detail: str, path: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", None) or {}
        context.setdefault("path", path)
        super().__init__(detail=detail, error_code=self.code, context=context, **kwargs)
        self.path = path


class DecodeNotFoundError(DecodeError):
    """The media reference does not exist."""

    code = "DECODE_NOT_FOUND"

    def __init__(self, path: str, **kwargs):
        super().__init__(f"Media not found: {path}", path=path, **kwargs)


class UnsupportedFormatError(DecodeError):
    """The media exists but has no decodable audio stream."""

    code = "DECODE_UNSUPPORTED_FORMAT"


class OutOfRangeError(DecodeError):
    """The requested start/duration lies outside the media."""

    code = "DECODE_OUT_OF_RANGE"

    def __init__(self, path: str, start: float, duration: float, media_duration: Optional[float] = None, **kwargs):
        super().__init__(
            f"Requested range {start:.3f}s+{duration:.3f}s is outside {path}",
            path=path,
            context={
                "path": path,
                "start": start,
                "duration": duration,
                "media_duration": media_duration,
            },
            **kwargs,
        )


class DecodeCancelledError(DecodeError):
    """Decoding was interrupted by the caller."""

    code = "DECODE_CANCELLED"


class DecodeInternalError(DecodeError):
    """The decoder failed for a reason outside the caller's control."""

    code = "DECODE_INTERNAL"
