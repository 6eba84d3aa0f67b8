"""Status tracking for monitored descriptors."""

from .policy import StatusPolicy
from .tracker import StatusTracker, classify_exception, classify_http_status

__all__ = ["StatusPolicy", "StatusTracker", "classify_exception", "classify_http_status"]
