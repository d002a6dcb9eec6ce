"""Store adapters for issue groups, occurrences and request traces.

Implementations support multiple backends:
- SQLite (zero-config, single-file)
- PostgreSQL (multi-process, scalable)
"""
