"""API components for the tabular deidentification engine."""

from .main import create_app
from .routes import router
from .models import DeidentificationRequest, DeidentificationResponse

__all__ = [
    "create_app",
    "router",
    "DeidentificationRequest",
    "DeidentificationResponse",
]
