"""
Receipt points tracker.

Submits receipt images to an external OCR service, polls the scan until it
resolves, classifies the extracted data, and requests reward points for valid
receipts. Entry state is kept in memory and snapshotted to disk on every change.
"""

__all__ = [
    "config",
    "logging",
    "paths",
]
