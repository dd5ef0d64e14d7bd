"""SQLite storage plumbing: engine policy, ORM tables and migrations."""
