"""SQLite storage layer shared by pm-agent repositories."""
