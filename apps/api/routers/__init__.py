"""Routers package."""

from . import (
    health,
    reports,
    billing,
)
