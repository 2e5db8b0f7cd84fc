"""SQLite storage for the project task table."""
