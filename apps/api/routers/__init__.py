"""Routers package."""

from . import (
    health,
    credits,
    tools,
    detections,
)
