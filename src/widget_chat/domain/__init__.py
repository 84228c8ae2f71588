"""Domain records and normalization."""
