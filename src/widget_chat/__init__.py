"""Session bootstrap and message synchronization core for the chat widget."""
