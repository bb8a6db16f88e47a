"""API package for admission control."""

from admission.api.app import create_app
from admission.api.routes import router

__all__ = ["create_app", "router"]
