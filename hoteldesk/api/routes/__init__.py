"""Route modules exposed by the API package."""

from . import metrics, ping, realtime, tickets

__all__ = ["metrics", "ping", "realtime", "tickets"]
