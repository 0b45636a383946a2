"""
Dependency injection for FastAPI routes.

Everything a route needs from outside the request comes through here so
tests can swap it with app.dependency_overrides:

    app.dependency_overrides[get_channel_secret] = lambda: "test-secret"
"""

from dataclasses import dataclass

from fastapi import Query

from line_summarizer.config import settings


def get_channel_secret() -> str:
    """LINE channel secret used to verify X-Line-Signature."""
    return settings.LINE_CHANNEL_SECRET


@dataclass
class Pagination:
    page: int
    page_size: int

    def has_more(self, total: int) -> bool:
        return self.page * self.page_size < total


def pagination(
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=200, description="Items per page"),
) -> Pagination:
    return Pagination(page=page, page_size=page_size)
