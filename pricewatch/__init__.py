"""Price monitoring with tiered extraction and scheduled digests."""

__version__ = "0.1.0"
