"""Routers package."""

from . import (
    health,
    auth,
    credits,
    payment,
    tasks,
    admin,
    templates,
    history,
)
