
from datetime import date
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, Dict, List, Any, Literal

from app.lms.enrollment import AssignmentType, EnrollmentLevel, EnrollmentOptions, EnrollmentState, Operation
from app.lms.records import ResourceKind

class ChatRequest(BaseModel):
    session_id: str
    message: str = Field(..., min_length=1)
    metadata: Optional[Dict[str, Any]] = Field(default_factory=dict)

class ChatResponse(BaseModel):
    session_id: str
    message: str
    intent: str
    status: Literal["ok", "partial", "not_found", "error"]
    data: Dict[str, Any] = {}
    trace_id: str

class ResolveRequest(BaseModel):
    kind: ResourceKind
    identifier: str = Field(..., min_length=1)
    # Reject contains/fallback matches with 409 instead of returning them
    require_confident: bool = False

class ResourceView(BaseModel):
    id: str
    display_name: str
    kind: ResourceKind
    tier: str
    annotation: Optional[str] = None

class EnrollmentOptionsModel(BaseModel):
    level: EnrollmentLevel = EnrollmentLevel.LEARNER
    assignment_type: AssignmentType = AssignmentType.NONE
    validity_start: Optional[date] = None
    validity_end: Optional[date] = None

    @model_validator(mode="after")
    def _check_dates(self):
        if self.validity_start and self.validity_end and self.validity_start > self.validity_end:
            raise ValueError("validity_start must not be after validity_end")
        return self

    def to_options(self) -> EnrollmentOptions:
        return EnrollmentOptions(
            level=self.level,
            assignment_type=self.assignment_type,
            validity_start=self.validity_start,
            validity_end=self.validity_end,
        )

class BulkRequest(BaseModel):
    kind: ResourceKind
    target: str
    users: List[str]
    operation: Operation = Operation.ENROLL
    options: EnrollmentOptionsModel = Field(default_factory=EnrollmentOptionsModel)

    @field_validator("kind")
    @classmethod
    def _enrollable(cls, value: ResourceKind) -> ResourceKind:
        if value is ResourceKind.USER:
            raise ValueError("bulk operations target a course or learning plan")
        return value

class BulkSuccessView(BaseModel):
    email: str
    user_id: str
    resource_id: str

class BulkFailureView(BaseModel):
    email: str
    reason: str
    resource_id: Optional[str] = None

class BulkResponse(BaseModel):
    operation: Operation
    kind: ResourceKind
    target_identifier: str
    target: Optional[ResourceView] = None
    successes: List[BulkSuccessView]
    failures: List[BulkFailureView]
    total_requested: int

class EnrollmentStatusRequest(BaseModel):
    kind: ResourceKind
    user: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)

    @field_validator("kind")
    @classmethod
    def _enrollable(cls, value: ResourceKind) -> ResourceKind:
        if value is ResourceKind.USER:
            raise ValueError("enrollment status targets a course or learning plan")
        return value

class EnrollmentRecordView(BaseModel):
    kind: ResourceKind
    resource_id: str
    resource_name: Optional[str] = None
    state: EnrollmentState
    enrolled_at: Optional[str] = None
    completed_at: Optional[str] = None
    progress: Optional[int] = None

class EnrollmentStatusResponse(BaseModel):
    user: ResourceView
    target: ResourceView
    enrolled: bool
    state: EnrollmentState
    record: Optional[EnrollmentRecordView] = None

class UserEnrollmentsRequest(BaseModel):
    user: str = Field(..., min_length=1)

class UserEnrollmentsResponse(BaseModel):
    user: ResourceView
    courses: List[EnrollmentRecordView]
    learning_plans: List[EnrollmentRecordView]
    total: int
