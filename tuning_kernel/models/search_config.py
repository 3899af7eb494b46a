"""Tuned search configuration: ranking weights and flat config entries."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class SearchWeights(BaseModel):
    """One version of the ranking field weights. Exactly one version is active."""

    id: str
    title_weight: float
    content_weight: float
    tag_weight: float
    active: bool = True
    version: int = 1
    metadata: dict = {}                     # optimization_id, previous_weights | rolled_back_from
    created_at: datetime

    def weights(self) -> dict:
        """The weight values only, used as the rollback snapshot."""
        return {
            "title_weight": self.title_weight,
            "content_weight": self.content_weight,
            "tag_weight": self.tag_weight,
        }


class ConfigEntry(BaseModel):
    """A string-keyed configuration value (cache rules, query transforms, index settings)."""

    key: str
    value: dict
    version: int = 1
    updated_at: Optional[datetime] = None
