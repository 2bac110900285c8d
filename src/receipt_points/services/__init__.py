"""HTTP clients for the OCR and reward boundaries."""

from .client import MotorClient, ScanClient, make_nfid

__all__ = ["MotorClient", "ScanClient", "make_nfid"]
