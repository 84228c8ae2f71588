"""Reference development backend."""
