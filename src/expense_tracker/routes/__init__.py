"""Routes package initialization."""

from expense_tracker.routes.family import router as family_router
