"""
Query model for the badge renderer.
"""

from typing import Optional

from pydantic import BaseModel


class BadgeQuery(BaseModel):
    """Query parameters sent to the badge renderer."""

    label: str
    message: str
    color: str
    style: Optional[str] = None

    def to_params(self) -> dict:
        return self.model_dump(exclude_none=True)
