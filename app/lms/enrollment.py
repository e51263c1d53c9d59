"""Enroll / unenroll calls and enrollment lookups against the LMS platform."""
import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from app.lms.errors import RemoteError
from app.lms.gateway import RemoteGateway
from app.lms.records import ResourceKind, first_non_empty

logger = logging.getLogger(__name__)

ENROLLMENT_PATHS = {
    ResourceKind.COURSE: "/learn/v1/enrollments",
    ResourceKind.LEARNING_PLAN: "/learningplan/v1/learningplans/enrollments",
}

RESOURCE_ID_FIELDS = {
    ResourceKind.COURSE: "course_ids",
    ResourceKind.LEARNING_PLAN: "learningplan_ids",
}

# Read side: enrollment listings, filtered by user and optionally by resource
ENROLLMENT_LIST_PATHS = {
    ResourceKind.COURSE: "/course/v1/courses/enrollments",
    ResourceKind.LEARNING_PLAN: "/learningplan/v1/learningplans/enrollments",
}

ENROLLMENT_LIST_FILTERS = {
    ResourceKind.COURSE: "course_id[]",
    ResourceKind.LEARNING_PLAN: "learning_plan_id[]",
}

LISTED_RESOURCE_ID_FIELDS = {
    ResourceKind.COURSE: ("course_id", "id_course"),
    ResourceKind.LEARNING_PLAN: ("learning_plan_id", "lp_id", "id_learning_plan"),
}

LISTED_RESOURCE_NAME_FIELDS = {
    ResourceKind.COURSE: ("course_name", "name"),
    ResourceKind.LEARNING_PLAN: ("learning_plan_name", "name"),
}

LISTED_USER_ID_FIELDS = ("user_id", "id_user")
LISTING_PAGE_SIZE = 200
MAX_LISTING_PAGES = 50

# Error buckets the platform reports inside an otherwise successful response
ENROLLMENT_ERROR_REASONS = {
    "existing_enrollments": "User is already enrolled",
    "invalid_users": "User ID is invalid or user doesn't exist",
    "invalid_courses": "Course ID is invalid or course doesn't exist",
    "invalid_learningplans": "Learning plan ID is invalid or learning plan doesn't exist",
    "permission_denied": "Permission denied",
}


class EnrollmentLevel(str, Enum):
    LEARNER = "learner"
    TUTOR = "tutor"
    INSTRUCTOR = "instructor"

    @property
    def remote_value(self) -> str:
        return {"learner": "3", "tutor": "4", "instructor": "6"}[self.value]


class AssignmentType(str, Enum):
    MANDATORY = "mandatory"
    REQUIRED = "required"
    RECOMMENDED = "recommended"
    OPTIONAL = "optional"
    NONE = "none"


class Operation(str, Enum):
    ENROLL = "enroll"
    UNENROLL = "unenroll"

    @property
    def past_tense(self) -> str:
        return "enrolled" if self is Operation.ENROLL else "unenrolled"


@dataclass(frozen=True)
class EnrollmentOptions:
    level: EnrollmentLevel = EnrollmentLevel.LEARNER
    assignment_type: AssignmentType = AssignmentType.NONE
    validity_start: Optional[date] = None
    validity_end: Optional[date] = None

    def __post_init__(self):
        if self.validity_start and self.validity_end and self.validity_start > self.validity_end:
            raise ValueError(
                f"validity start {self.validity_start.isoformat()} is after validity end {self.validity_end.isoformat()}"
            )

    def to_payload(self, kind: ResourceKind) -> Dict[str, Any]:
        """Only explicitly supplied options are sent; the platform applies its own defaults otherwise."""
        payload: Dict[str, Any] = {}
        if kind is ResourceKind.COURSE:
            payload["level"] = self.level.remote_value
        if self.assignment_type is not AssignmentType.NONE:
            payload["assignment_type"] = self.assignment_type.value
        if self.validity_start:
            payload["date_begin_validity"] = self.validity_start.isoformat()
        if self.validity_end:
            payload["date_expire_validity"] = self.validity_end.isoformat()
        return payload


class EnrollmentState(str, Enum):
    NOT_ENROLLED = "not_enrolled"
    ENROLLED = "enrolled"
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SUSPENDED = "suspended"


_STATE_BY_TEXT = {
    "completed": EnrollmentState.COMPLETED,
    "in progress": EnrollmentState.IN_PROGRESS,
    "in_progress": EnrollmentState.IN_PROGRESS,
    "enrolled": EnrollmentState.IN_PROGRESS,
    "not started": EnrollmentState.NOT_STARTED,
    "not_started": EnrollmentState.NOT_STARTED,
    "subscribed": EnrollmentState.NOT_STARTED,
    "suspended": EnrollmentState.SUSPENDED,
}

_STATE_BY_ID = {
    "0": EnrollmentState.NOT_STARTED,
    "1": EnrollmentState.IN_PROGRESS,
    "2": EnrollmentState.COMPLETED,
    "3": EnrollmentState.SUSPENDED,
}


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def enrollment_state(kind: ResourceKind, record: Mapping[str, Any]) -> EnrollmentState:
    """
    Map a listed enrollment to a state. Learning plans report progress as
    completed/total mandatory courses; courses report a status label or id.
    Anything unrecognised is plain ENROLLED.
    """
    if kind is ResourceKind.LEARNING_PLAN:
        completed = _as_int(record.get("mandatory_courses_completed_at_completion"))
        total = _as_int(record.get("mandatory_courses_total_at_completion"))
        if completed is not None or total is not None:
            completed, total = completed or 0, total or 0
            if total > 0 and completed >= total:
                return EnrollmentState.COMPLETED
            if completed > 0:
                return EnrollmentState.IN_PROGRESS
            return EnrollmentState.ENROLLED

    label = first_non_empty(record, ("enrollment_status", "status"))
    if label and label.lower() in _STATE_BY_TEXT:
        return _STATE_BY_TEXT[label.lower()]
    status_id = first_non_empty(record, ("status_id", "enrollment_status_id"))
    if status_id in _STATE_BY_ID:
        return _STATE_BY_ID[status_id]
    return EnrollmentState.ENROLLED


@dataclass(frozen=True)
class EnrollmentRecord:
    kind: ResourceKind
    user_id: str
    resource_id: str
    state: EnrollmentState
    resource_name: Optional[str] = None
    enrolled_at: Optional[str] = None
    completed_at: Optional[str] = None
    progress: Optional[int] = None

    @classmethod
    def from_listing(cls, kind: ResourceKind, record: Mapping[str, Any], user_id: str, resource_id: str = "") -> "EnrollmentRecord":
        progress = None
        if kind is ResourceKind.LEARNING_PLAN:
            completed = _as_int(record.get("mandatory_courses_completed_at_completion")) or 0
            total = _as_int(record.get("mandatory_courses_total_at_completion")) or 0
            if total:
                progress = round(completed * 100 / total)
        return cls(
            kind=kind,
            user_id=user_id,
            resource_id=first_non_empty(record, LISTED_RESOURCE_ID_FIELDS[kind]) or resource_id,
            state=enrollment_state(kind, record),
            resource_name=first_non_empty(record, LISTED_RESOURCE_NAME_FIELDS[kind]),
            enrolled_at=first_non_empty(
                record, ("enrollment_created_at", "enrollment_date", "enroll_date_of_enrollment")
            ),
            completed_at=first_non_empty(
                record, ("enrollment_completion_date", "date_complete", "completion_date", "date_completed")
            ),
            progress=progress,
        )


class EnrollmentRejected(RemoteError):
    """2xx response in which the platform declined the enrollment."""

    def __init__(self, reason: str, raw_body: str = "", endpoint: str = ""):
        self.reason = reason
        super().__init__(200, raw_body, endpoint)

    def describe(self) -> str:
        return self.reason


class EnrollmentService:
    def __init__(self, gateway: RemoteGateway):
        self.gateway = gateway

    async def enroll(
        self,
        kind: ResourceKind,
        user_id: str,
        resource_id: str,
        options: Optional[EnrollmentOptions] = None,
    ) -> Union[Dict[str, Any], RemoteError]:
        path = self._path(kind)
        body = {
            RESOURCE_ID_FIELDS[kind]: [str(resource_id)],
            "user_ids": [str(user_id)],
            **(options or EnrollmentOptions()).to_payload(kind),
        }
        result = await self.gateway.post(path, body)
        if isinstance(result, RemoteError):
            return result
        rejection = self._rejection(result, path)
        if rejection is not None:
            logger.info(f"Enrollment of user {user_id} in {kind.value} {resource_id} rejected: {rejection.reason}")
            return rejection
        return result if isinstance(result, dict) else {"data": result}

    async def unenroll(self, kind: ResourceKind, user_id: str, resource_id: str) -> Union[Dict[str, Any], RemoteError]:
        path = self._path(kind)
        body = {RESOURCE_ID_FIELDS[kind]: [str(resource_id)], "user_ids": [str(user_id)]}
        result = await self.gateway.delete(path, body)
        if isinstance(result, RemoteError):
            return result
        return result if isinstance(result, dict) else {"data": result}

    async def apply(
        self,
        operation: Operation,
        kind: ResourceKind,
        user_id: str,
        resource_id: str,
        options: Optional[EnrollmentOptions] = None,
    ) -> Union[Dict[str, Any], RemoteError]:
        if operation is Operation.ENROLL:
            return await self.enroll(kind, user_id, resource_id, options)
        return await self.unenroll(kind, user_id, resource_id)

    async def find(
        self, kind: ResourceKind, user_id: str, resource_id: str
    ) -> Union[Optional[EnrollmentRecord], RemoteError]:
        """The user's enrollment in one course or learning plan, or None."""
        path = self._list_path(kind)
        params = {"user_id[]": str(user_id), ENROLLMENT_LIST_FILTERS[kind]: str(resource_id)}
        items = await self.gateway.list_items(path, params=params)
        if isinstance(items, RemoteError):
            return items
        for item in items:
            if first_non_empty(item, LISTED_USER_ID_FIELDS) != str(user_id):
                continue
            listed_resource = first_non_empty(item, LISTED_RESOURCE_ID_FIELDS[kind])
            # Listings scoped to one resource may omit its id
            if listed_resource in (None, str(resource_id)):
                return EnrollmentRecord.from_listing(kind, item, str(user_id), str(resource_id))
        return None

    async def list_for_user(self, kind: ResourceKind, user_id: str) -> Union[List[EnrollmentRecord], RemoteError]:
        """Every enrollment of one user in courses or learning plans, across pages."""
        path = self._list_path(kind)
        records: List[EnrollmentRecord] = []
        for page in range(1, MAX_LISTING_PAGES + 1):
            result = await self.gateway.get(
                path, params={"user_id[]": str(user_id), "page": page, "page_size": LISTING_PAGE_SIZE}
            )
            if isinstance(result, RemoteError):
                return result
            items, has_more = _page_items(result)
            records.extend(
                EnrollmentRecord.from_listing(kind, item, str(user_id))
                for item in items
                if first_non_empty(item, LISTED_USER_ID_FIELDS) == str(user_id)
            )
            if not items or not has_more:
                break
        else:
            logger.warning(f"Stopped listing {kind.value} enrollments for user {user_id} after {MAX_LISTING_PAGES} pages")
        return records

    @staticmethod
    def _list_path(kind: ResourceKind) -> str:
        try:
            return ENROLLMENT_LIST_PATHS[kind]
        except KeyError:
            raise ValueError(f"A {kind.label.lower()} has no enrollments") from None

    @staticmethod
    def _path(kind: ResourceKind) -> str:
        try:
            return ENROLLMENT_PATHS[kind]
        except KeyError:
            raise ValueError(f"Cannot enroll into a {kind.label.lower()}") from None

    @staticmethod
    def _rejection(result: Any, path: str) -> Optional[EnrollmentRejected]:
        data = result.get("data") if isinstance(result, dict) else None
        if not isinstance(data, dict):
            return None
        errors = data.get("errors")
        if not isinstance(errors, dict) or data.get("enrolled"):
            return None
        for key, reason in ENROLLMENT_ERROR_REASONS.items():
            if errors.get(key):
                return EnrollmentRejected(reason, str(result), path)
        if any(errors.values()):
            return EnrollmentRejected("Enrollment rejected by the platform", str(result), path)
        return None


def _page_items(result: Any) -> Tuple[List[Dict[str, Any]], bool]:
    data = result.get("data") if isinstance(result, dict) else None
    if not isinstance(data, dict):
        return [], False
    items = [item for item in data.get("items") or [] if isinstance(item, dict)]
    return items, bool(data.get("has_more_data"))
