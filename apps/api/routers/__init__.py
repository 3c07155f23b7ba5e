"""Routers package."""

from . import (
    health,
    credits,
    promocodes,
    billing,
    admin,
)
