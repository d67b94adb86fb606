"""Price extraction tiers."""
