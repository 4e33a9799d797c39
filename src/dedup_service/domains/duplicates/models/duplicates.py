"""
Duplicate detection domain models
"""

from typing import Dict, List, Any, Optional
from datetime import date, datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field

from dedup_service.core.errors import ValidationError
from dedup_service.domains.merge.models.merge import MergeDecision
from ..scoring.normalizer import normalize_text, normalize_digits, parse_date


class PatientFingerprint(BaseModel):
    """Immutable normalized snapshot of a patient's comparable attributes"""
    model_config = ConfigDict(frozen=True)

    patient_id: Optional[str] = Field(None, description="Absent for a patient not yet registered")
    scope_id: str = Field(..., description="Clinic / tenant the patient belongs to")
    first_name: str
    last_name: str
    middle_name: str = ""
    date_of_birth: Optional[date] = None
    phone: str = Field("", description="Digits only")
    street: str = ""
    city: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_patient_data(
        cls,
        data: Dict[str, Any],
        scope_id: Optional[str] = None
    ) -> "PatientFingerprint":
        """
        Build a fingerprint from raw patient data

        Accepts ``dob`` or ``date_of_birth``, ``phone`` or ``phone_number``, and
        the address either flat (``street``/``city``) or nested under ``address``.
        Raises ValidationError when a mandatory field is missing.
        """
        if not isinstance(data, dict):
            raise ValidationError("Patient data must be an object")

        scope = scope_id or data.get("scope_id")
        first_name = normalize_text(data.get("first_name"))
        last_name = normalize_text(data.get("last_name"))

        missing = [
            name for name, value in (
                ("scope_id", scope),
                ("first_name", first_name),
                ("last_name", last_name),
            ) if not value
        ]
        if missing:
            raise ValidationError(
                f"Missing mandatory fields: {', '.join(missing)}",
                {"missing": missing}
            )

        raw_dob = data.get("date_of_birth", data.get("dob"))
        dob = parse_date(raw_dob)
        if raw_dob not in (None, "") and dob is None:
            raise ValidationError(f"Unparseable date of birth: {raw_dob!r}", {"field": "date_of_birth"})

        address = data.get("address")
        if isinstance(address, dict):
            street = address.get("street") or address.get("line")
            city = address.get("city")
        else:
            street = data.get("street") or address
            city = data.get("city")

        patient_id = data.get("patient_id") or data.get("id")

        return cls(
            patient_id=str(patient_id) if patient_id else None,
            scope_id=str(scope),
            first_name=first_name,
            last_name=last_name,
            middle_name=normalize_text(data.get("middle_name")),
            date_of_birth=dob,
            phone=normalize_digits(data.get("phone") or data.get("phone_number")),
            street=normalize_text(street),
            city=normalize_text(city),
        )


class FieldScore(BaseModel):
    """Similarity of one attribute between two patients"""
    field: str
    similarity: float = Field(..., ge=0.0, le=1.0)
    matched: bool
    weight: float


class CandidateStatus(str, Enum):
    """Resolution workflow states"""
    PENDING = "pending"
    CONFIRMED_DUPLICATE = "confirmed_duplicate"
    CONFIRMED_DIFFERENT = "confirmed_different"
    MERGED = "merged"


TERMINAL_STATUSES = frozenset({CandidateStatus.CONFIRMED_DIFFERENT, CandidateStatus.MERGED})


def make_pair_key(patient_a: str, patient_b: str) -> str:
    """Order-independent key for an unordered patient pair"""
    low, high = sorted((patient_a, patient_b))
    return f"{low}|{high}"


class DuplicateCandidate(BaseModel):
    """A pair of patient records suspected of being the same person"""
    id: Optional[str] = None
    scope_id: str
    pair_key: Optional[str] = Field(None, description="Unset for a registration preview")
    primary_patient_id: str = Field(..., description="Existing record the duplicate was found against")
    duplicate_patient_id: Optional[str] = Field(None, description="Record that was being checked; unset before registration")
    score: float = Field(..., ge=0.0, le=1.0)
    high_confidence: bool = False
    field_scores: List[FieldScore] = Field(default_factory=list)
    matched_fields: List[str] = Field(default_factory=list)
    status: CandidateStatus = CandidateStatus.PENDING
    reviewer_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    detection_count: int = 1
    merge_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def involves(self, patient_id: str) -> bool:
        return patient_id in (self.primary_patient_id, self.duplicate_patient_id)

    def other_patient(self, patient_id: str) -> str:
        if patient_id == self.primary_patient_id:
            return self.duplicate_patient_id
        return self.primary_patient_id


class CandidateFilter(BaseModel):
    """Review-queue filter"""
    status: Optional[CandidateStatus] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    high_confidence: Optional[bool] = None
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class CheckRequest(BaseModel):
    """Duplicate check during registration"""
    patient_data: Dict[str, Any] = Field(..., description="Patient demographic data")
    scope_id: str = Field(..., description="Clinic / tenant scope")
    actor: str = Field(default="system", description="User or system triggering the check")


class CheckResult(BaseModel):
    """Duplicate check response"""
    has_duplicates: bool
    duplicates: List[DuplicateCandidate] = Field(default_factory=list)
    available: bool = Field(default=True, description="False when the check degraded")
    message: Optional[str] = None


class ResolutionDecision(str, Enum):
    """Reviewer decision on a candidate"""
    CONFIRM_DUPLICATE = "confirm_duplicate"
    CONFIRM_DIFFERENT = "confirm_different"


class ResolveRequest(BaseModel):
    """Reviewer resolution, optionally triggering a merge"""
    decision: ResolutionDecision
    reviewer_id: Optional[str] = Field(default=None, description="Required to confirm a duplicate")
    merge_decisions: Optional[List[MergeDecision]] = Field(
        default=None,
        description="When present with confirm_duplicate, the merge runs synchronously"
    )
    survivor_id: Optional[str] = Field(
        default=None,
        description="Defaults to the candidate's primary patient"
    )


class ScanRequest(BaseModel):
    """Population scan request"""
    scope_id: str
    actor: str = "system"
    batch_size: Optional[int] = Field(default=None, ge=1, le=5000)
    restart: bool = Field(default=False, description="Ignore the stored checkpoint")


class ScanReport(BaseModel):
    """Population scan summary"""
    scope_id: str
    processed: int = 0
    candidates_found: int = 0
    failed: int = 0
    last_patient_id: Optional[str] = None
    resumed_from: Optional[str] = None
    completed: bool = False


class PatientIndexRequest(BaseModel):
    """Patient demographics pushed by the registration side"""
    scope_id: str
    attributes: Dict[str, Any] = Field(..., description="first_name, last_name, dob, phone, address, ...")
