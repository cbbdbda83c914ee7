"""b2proxy - single-request upload proxy for Backblaze B2."""

__version__ = "0.1.0"
