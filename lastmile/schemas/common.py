"""
Shared Pydantic schemas: the authenticated actor and pagination envelopes.
"""

from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from lastmile.core.config import Settings, get_settings


class Actor(BaseModel):
    """
    Identity of the caller performing an operation.

    Built from the bearer token's ``sub`` and ``role`` claims. Elevated roles
    (dispatchers, administrators) may act on any courier's deliveries and
    routes.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID
    role: str = Field(..., min_length=1, max_length=50)

    @field_validator("role")
    @classmethod
    def normalize_role(cls, v: str) -> str:
        return v.strip().lower()

    def is_elevated(self, settings: Optional[Settings] = None) -> bool:
        settings = settings or get_settings()
        return self.role in settings.elevated_roles

    def is_courier(self, settings: Optional[Settings] = None) -> bool:
        settings = settings or get_settings()
        return self.role in settings.courier_roles


class PageParams(BaseModel):
    """Page number and size for list endpoints."""

    page: int = Field(default=1, ge=1, description="Page number (1-indexed)")
    page_size: int = Field(default=20, ge=1, le=100, description="Items per page")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    @property
    def limit(self) -> int:
        return self.page_size


class PageMeta(BaseModel):
    """Pagination metadata returned alongside a page of items."""

    total: int = Field(..., ge=0, description="Total number of items")
    page: int = Field(..., ge=1, description="Current page number")
    page_size: int = Field(..., ge=1, le=100, description="Number of items per page")
    total_pages: int = Field(..., ge=0, description="Total number of pages")

    @classmethod
    def build(cls, total: int, page: int, page_size: int) -> "PageMeta":
        return cls(
            total=total,
            page=page,
            page_size=page_size,
            total_pages=(total + page_size - 1) // page_size,
        )


class ErrorResponse(BaseModel):
    """Error body rendered for every failed request."""

    error: str = Field(..., description="Stable machine-readable error code")
    message: str = Field(..., description="Human-readable message")
    details: dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = None
