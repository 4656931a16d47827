"""
docproof API — registration, status, explorer webhooks and feeds over HTTP.

Stdlib http.server only; the state machine lives in the docproof package.
"""

from docproof.api.server import run_api

__all__ = ["run_api"]
