from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SubjectCreate(BaseModel):
    subject_id: str
    required_types: List[str] = Field(default_factory=list)


class RequirementsAdd(BaseModel):
    type_ids: List[str]


class CertificationCreate(BaseModel):
    subject_id: str
    type_id: str
    issuing_authority: Optional[str] = None
    issue_date: Optional[date] = None
    expiration_date: Optional[date] = None
    non_expiring: bool = False
    proof_references: List[str] = Field(default_factory=list)

    def record_fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"subject_id", "type_id"})


class CorrectionCreate(BaseModel):
    reason: str
    changes: Dict[str, Any] = Field(default_factory=dict)


class VerifyRequest(BaseModel):
    method: str = "qr"
    location_hint: Optional[str] = None


class AuditExportRequest(BaseModel):
    subject_ids: List[str]
    from_time: Optional[datetime] = None
    to_time: Optional[datetime] = None
