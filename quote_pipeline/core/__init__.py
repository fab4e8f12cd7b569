"""Core primitives shared by every layer: errors, clock, cancellation."""

from __future__ import annotations

from .clock import Clock, SystemClock
from .context import CancelToken
from .errors import QuotePipelineError

__all__ = ["CancelToken", "Clock", "QuotePipelineError", "SystemClock"]
