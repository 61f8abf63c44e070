"""Historical tick data — session records, sources and the shared cache."""

from tick_optimizer.data.models import Session, Tick
from tick_optimizer.data.source import CsvTickSource, InMemoryTickSource, TickSource
from tick_optimizer.data.cache import TickCache

__all__ = [
    "Session",
    "Tick",
    "TickSource",
    "InMemoryTickSource",
    "CsvTickSource",
    "TickCache",
]
