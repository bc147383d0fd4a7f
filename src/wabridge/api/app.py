"""ASGI entrypoint: ``uvicorn wabridge.api.app:app``."""

from .factory import create_app

app = create_app()
