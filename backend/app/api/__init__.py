"""API routers package."""

from app.api import offers, trades, events, deps

__all__ = [
    "offers",
    "trades",
    "events",
    "deps",
]
