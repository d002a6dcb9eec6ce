"""Instrumentation that feeds the request span collector.

- HTTP: an httpx transport wrapper recording outbound calls as "http" spans
- SQL: a connection proxy for aiosqlite and asyncpg recording "sql" spans
  and counting queries
"""

from .http_client import HttpInstrumenter, InstrumentedTransport
from .sql import InstrumentedConnection, SqlInstrumenter

__all__ = [
    "HttpInstrumenter",
    "InstrumentedConnection",
    "InstrumentedTransport",
    "SqlInstrumenter",
]
