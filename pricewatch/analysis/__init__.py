"""Price trend analysis."""
