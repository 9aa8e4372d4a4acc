"""ASGI entry point: ``uvicorn narrative_tracker.main:app``."""
from dotenv import load_dotenv
load_dotenv()

from narrative_tracker.app import app  # noqa: E402,F401
