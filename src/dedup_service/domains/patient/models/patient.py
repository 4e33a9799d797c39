"""
Patient domain models
"""

from typing import Optional, Dict, Any
from datetime import datetime
from dataclasses import dataclass, field


class PatientStatus:
    """Patient record status values"""
    ACTIVE = "active"
    MERGED = "merged"


@dataclass
class PatientRecord:
    """Patient record as held by the Patient Directory"""
    patient_id: str
    scope_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    status: str = PatientStatus.ACTIVE
    merged_into_id: Optional[str] = None
    merged_at: Optional[datetime] = None

    @property
    def is_merged(self) -> bool:
        return self.status == PatientStatus.MERGED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patient_id": self.patient_id,
            "scope_id": self.scope_id,
            "attributes": dict(self.attributes),
            "status": self.status,
            "merged_into_id": self.merged_into_id,
            "merged_at": self.merged_at,
        }

    @classmethod
    def from_dict(cls, doc: Dict[str, Any]) -> "PatientRecord":
        return cls(
            patient_id=doc["patient_id"],
            scope_id=doc.get("scope_id", ""),
            attributes=dict(doc.get("attributes") or {}),
            status=doc.get("status", PatientStatus.ACTIVE),
            merged_into_id=doc.get("merged_into_id"),
            merged_at=doc.get("merged_at"),
        )
