"""External adapters for tripwire.

This package contains all external dependencies (SQLite, PostgreSQL,
HTTP notifier channels, SMTP, GitHub) and provides implementations of
the core port interfaces.

Adapter Organization:

- store/: Persistence for issue groups, occurrences and request traces
- notification/: Alert channels and the GitHub issue creator
- mail/: Background SMTP delivery for the email channel
- capture/: Local-variable snapshots at the point of failure
- scheduler/: Retention cleanup loop
- cli/: Command-line management commands
"""
