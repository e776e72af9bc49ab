"""Local status API for ledgersync.

Exposes sync status, the operation queue and conflict history to the UI
and notification layers using FastAPI.
"""

from .app import create_app

__all__ = ["create_app"]
