"""
security.py - API key check for the watch service API
"""
import os

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

API_KEY_ENV = "TABLEWATCH_API_KEY"

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_api_key(supplied_key: str = Security(api_key_header)) -> str:
    """
    Route dependency comparing ``X-API-Key`` with ``TABLEWATCH_API_KEY``.

    With no key configured the service runs open and every caller is
    treated as ``dev-key``.
    """
    configured_key = os.getenv(API_KEY_ENV)
    if not configured_key:
        return "dev-key"

    if supplied_key != configured_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API Key"
        )
    return supplied_key
