"""Health subsystem — checker, sliding window, SQLite storage, incidents, monitor loop."""
