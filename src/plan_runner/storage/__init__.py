"""SQLite storage primitives shared by plan-runner repositories."""
