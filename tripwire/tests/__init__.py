"""Test suite for tripwire.

Organized into three categories:

1. core/: Unit tests for the tracking pipeline and APM aggregation
   - Minimal dependencies, fast execution
   - Uses in-memory fakes for ports

2. adapters/: Integration tests for adapter implementations
   - SQLite against a temporary database, PostgreSQL when configured
   - HTTP channels against httpx.MockTransport

3. fakes/: Port implementations for testing
   - In-memory IssueStorePort, TraceStorePort, notifiers, mail delivery
   - Used by core unit tests
"""
