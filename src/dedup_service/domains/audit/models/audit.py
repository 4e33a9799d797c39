"""
Audit domain models
"""

from typing import Dict, List, Any, Optional
from datetime import datetime, timezone
from enum import Enum
import uuid
from pydantic import BaseModel, ConfigDict, Field


class AuditOperation(str, Enum):
    """Operations that leave an audit trail"""
    DETECT = "detect"
    RESOLVE = "resolve"
    MERGE = "merge"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEntry(BaseModel):
    """Immutable record of one detection run, resolution or merge"""
    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    operation: AuditOperation
    actor: str
    scope_id: Optional[str] = None
    subject_ids: List[str] = Field(default_factory=list, description="Patient and candidate ids involved")
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)
