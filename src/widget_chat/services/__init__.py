"""Session, message and conversation services."""
