"""Local store for social-media posts with content canonicalization and hydration."""

__version__ = "0.1.0"
