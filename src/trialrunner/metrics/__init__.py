from __future__ import annotations

from .capture import CaptureError, MetricCaptureClient, extract_field
from .targets import TARGET_RESOLVERS, Target, resolve_target

__all__ = [
    "CaptureError",
    "MetricCaptureClient",
    "extract_field",
    "TARGET_RESOLVERS",
    "Target",
    "resolve_target",
]
