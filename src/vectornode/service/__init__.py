"""HTTP surface (FastAPI) over the ingest front-door, the query engine and provider setup."""

from .app import create_app

__all__ = ["create_app"]
