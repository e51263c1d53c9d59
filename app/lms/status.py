"""Enrollment status of one user, for a single resource or across all of them.

Both the user and the resource are resolved confidently before the
platform is asked; a low-confidence match raises AmbiguousMatch rather
than reporting on the wrong record.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from app.core.observability import TraceManager
from app.lms.enrollment import EnrollmentRecord, EnrollmentService, EnrollmentState
from app.lms.errors import RemoteError
from app.lms.records import ResolvedResource, ResourceKind
from app.lms.resolver import ResourceResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnrollmentStatus:
    user: ResolvedResource
    target: ResolvedResource
    record: Optional[EnrollmentRecord] = None

    @property
    def enrolled(self) -> bool:
        return self.record is not None

    @property
    def state(self) -> EnrollmentState:
        return self.record.state if self.record else EnrollmentState.NOT_ENROLLED


@dataclass(frozen=True)
class UserEnrollments:
    user: ResolvedResource
    courses: Tuple[EnrollmentRecord, ...]
    learning_plans: Tuple[EnrollmentRecord, ...]

    @property
    def total(self) -> int:
        return len(self.courses) + len(self.learning_plans)


class EnrollmentInspector:
    def __init__(self, resolver: ResourceResolver, enrollments: EnrollmentService):
        self.resolver = resolver
        self.enrollments = enrollments

    @TraceManager.span("check_enrollment", record_args=("kind", "user_identifier", "target_identifier"))
    async def check(self, kind: ResourceKind, user_identifier: str, target_identifier: str) -> EnrollmentStatus:
        """
        Raises ResourceNotFound / AmbiguousMatch when either side cannot be
        resolved confidently, and RemoteError when the listing call fails.
        """
        if kind is ResourceKind.USER:
            raise ValueError("Enrollment status targets a course or learning plan, not a user")

        user = await self.resolver.resolve_confident(ResourceKind.USER, user_identifier)
        target = await self.resolver.resolve_confident(kind, target_identifier)

        record = await self.enrollments.find(kind, user.id, target.id)
        if isinstance(record, RemoteError):
            raise record

        status = EnrollmentStatus(user=user, target=target, record=record)
        logger.info(f"User {user.id} in {kind.value} {target.id}: {status.state.value}")
        return status

    @TraceManager.span("list_enrollments", record_args=("user_identifier",))
    async def list_for_user(self, user_identifier: str) -> UserEnrollments:
        user = await self.resolver.resolve_confident(ResourceKind.USER, user_identifier)

        courses, plans = await asyncio.gather(
            self.enrollments.list_for_user(ResourceKind.COURSE, user.id),
            self.enrollments.list_for_user(ResourceKind.LEARNING_PLAN, user.id),
        )
        for listed in (courses, plans):
            if isinstance(listed, RemoteError):
                raise listed

        logger.info(f"User {user.id} has {len(courses)} course and {len(plans)} learning plan enrollment(s)")
        return UserEnrollments(user=user, courses=tuple(courses), learning_plans=tuple(plans))
