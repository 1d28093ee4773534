"""Shared utilities: worker pool, external tool runner, fuzzy name matching."""
