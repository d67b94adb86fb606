"""Fetch strategies used by the tiered extractor."""
