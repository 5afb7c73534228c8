"""
App assembly entry point.

Re-exports the FastAPI `app` from `taquilla.api.main` for `uvicorn app:app`.
"""

from taquilla.api.main import app  # noqa: F401
