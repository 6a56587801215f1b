"""SQLite storage primitives shared by the workspace and global stores."""
