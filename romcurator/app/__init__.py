"""Application controllers: import, reconcile, select, convert and check."""
