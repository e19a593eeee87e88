"""SQLite persistence for permissions, app settings, audit log, and velocity."""
