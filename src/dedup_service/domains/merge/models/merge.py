"""
Merge domain models
"""

from typing import List, Optional
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field, computed_field


class FieldChoice(str, Enum):
    """Which side's value the survivor keeps for one attribute"""
    KEEP_PRIMARY = "keep_primary"
    ADOPT_DUPLICATE = "adopt_duplicate"


class MergeDecision(BaseModel):
    """Per-field resolution choice supplied by the caller"""
    field: str = Field(..., min_length=1, description="Patient attribute name")
    choice: FieldChoice = Field(..., description="keep_primary or adopt_duplicate")


class CategoryCount(BaseModel):
    """Dependent records re-pointed for one category"""
    category: str
    count: int = Field(..., ge=0)


class MergeOutcome(BaseModel):
    """Result of a merge, successful or rolled back"""
    merge_id: str = Field(..., description="Identifier of this merge attempt")
    candidate_id: Optional[str] = None
    survivor_id: str = Field(..., description="Patient that absorbs the records")
    absorbed_id: str = Field(..., description="Patient marked as merged")
    migrated: List[CategoryCount] = Field(default_factory=list)
    success: bool
    already_merged: bool = Field(default=False, description="True when re-invoked on a committed merge")
    failed_step: Optional[str] = None
    failed_category: Optional[str] = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None

    @computed_field
    @property
    def total_migrated(self) -> int:
        return sum(item.count for item in self.migrated)
