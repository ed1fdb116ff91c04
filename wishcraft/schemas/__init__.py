"""Pydantic schemas for request/response validation."""

from wishcraft.schemas.common import BaseSchema, HealthResponse

__all__ = [
    "BaseSchema",
    "HealthResponse",
]
