"""Client-side sync: the offline write queue and its HTTP transport."""

from .offline_queue import OfflineQueue
from .transport import HttpTransport

__all__ = ["HttpTransport", "OfflineQueue"]
