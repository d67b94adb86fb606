"""Model-backed extraction helpers."""
