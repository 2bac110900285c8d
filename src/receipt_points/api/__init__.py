"""HTTP status API for the tracker."""

from .app import create_app

__all__ = ["create_app"]
