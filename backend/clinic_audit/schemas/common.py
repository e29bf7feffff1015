"""Response envelope and shared API model base."""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class ApiModel(BaseModel):
    """Base for every API payload: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ApiResponse(ApiModel, Generic[T]):
    """``{success, data, error}`` envelope returned by every endpoint."""

    success: bool = True
    data: T | None = None
    error: str | None = None


class Pagination(ApiModel):
    page: int
    limit: int
    total: int
    pages: int
