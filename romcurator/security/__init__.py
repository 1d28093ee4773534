"""Path and archive-member safety checks."""
