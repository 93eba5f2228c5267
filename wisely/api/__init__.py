"""HTTP surface for wisely."""

from .rest import create_app

__all__ = ["create_app"]
