"""Shared schemas used across all route modules."""

from __future__ import annotations

from pydantic import BaseModel


class PaginationMeta(BaseModel):
    """Pagination metadata in list responses."""

    page: int
    limit: int
    total_items: int
    total_pages: int


class ErrorResponse(BaseModel):
    """RFC 7807 Problem Details error response."""

    type: str = "about:blank"
    title: str
    status: int
    detail: str
    instance: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    environment: str
    store: str
    cache: str
