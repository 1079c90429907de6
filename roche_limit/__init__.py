"""SQLite-backed storage for IP rules, API keys, user sessions, login failures, CSRF tokens and audit events."""

__version__ = "0.1.0"