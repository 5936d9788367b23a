"""
HTTP query surface for the crudkit index server (FastAPI).
"""

from .app import create_app

__all__ = ["create_app"]
