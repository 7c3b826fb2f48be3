"""
WebSocket event models for planning poker rooms.

The FastAPI application lives in ``ws.server``; it is not imported here
because the session engine depends on the event models.
"""

from .events import *
