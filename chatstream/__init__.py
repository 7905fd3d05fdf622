"""Multi-session streaming chat engine with a FastAPI bridge."""

__version__ = "0.1.0"
