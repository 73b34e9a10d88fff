"""
Pydantic response models for the controllers.
"""

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = Field(default="ok", description="Liveness status.")


class RelationalStatusResponse(BaseModel):
    """Result of a round-trip to the relational store."""

    store: str = Field(default="relational")
    result: int = Field(..., description="Value returned by the probe query.")


class DocumentStatusResponse(BaseModel):
    """Result of a round-trip to the document store."""

    store: str = Field(default="document")
    database: str = Field(..., description="Database the handle is bound to.")
    collections: list[str] = Field(default_factory=list, description="Collections in the database.")


class ErrorResponse(BaseModel):
    """Standard error response body."""

    detail: str = Field(..., description="Human-readable error description.")
