from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow


class GenerationOptions(BaseModel):
    """Per-request knobs that affect the price of a generation."""

    count: int = Field(default=1, ge=1, description="Number of images requested.")
    high_resolution: bool = False
    priority: bool = False


class GenerationCharge(BaseModel):
    cost: int
    remaining_credits: int
    was_free: bool = False
    transaction_id: Optional[str] = Field(
        default=None,
        description="Audit transaction of the debit; refunds are keyed on it.",
    )


class Project(DBSerializableModel):
    """
    A user-owned project (a character model in the product) that generated
    outputs are attached to.
    """

    collection_name: ClassVar[str] = "credit_projects"

    id: Optional[str] = Field(default=None)
    account_id: str
    name: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class GeneratedOutput(DBSerializableModel):
    """
    Durable record of one generated image. The free tier is counted from
    these rows.
    """

    collection_name: ClassVar[str] = "credit_generated_outputs"

    id: Optional[str] = Field(default=None)
    project_id: str
    is_restricted: bool = False
    created_at: datetime = Field(default_factory=utcnow)
