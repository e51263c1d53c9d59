"""Multi-user enroll / unenroll against one shared target resource.

Every requested identifier ends up in exactly one outcome, in input
order. The only short-circuit is the shared target: if it cannot be
resolved, all items fail with the same reason and no per-user calls are
made. Per-user failures never affect siblings.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Union

from app.core.observability import TraceManager
from app.lms.enrollment import EnrollmentOptions, EnrollmentService, Operation
from app.lms.errors import (
    AmbiguousMatch,
    AuthenticationFailed,
    GatewayUnavailable,
    LMSError,
    RemoteError,
    ResourceNotFound,
)
from app.lms.records import ResolvedResource, ResourceKind
from app.lms.resolver import ResourceResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BulkItemSuccess:
    email: str
    user_id: str
    resource_id: str


@dataclass(frozen=True)
class BulkItemFailure:
    email: str
    reason: str
    resource_id: Optional[str] = None


BulkItemOutcome = Union[BulkItemSuccess, BulkItemFailure]


@dataclass(frozen=True)
class BulkOperationResult:
    operation: Operation
    kind: ResourceKind
    target_identifier: str
    successes: Tuple[BulkItemSuccess, ...]
    failures: Tuple[BulkItemFailure, ...]
    total_requested: int
    target: Optional[ResolvedResource] = None

    def __post_init__(self):
        if len(self.successes) + len(self.failures) != self.total_requested:
            raise ValueError(
                f"bulk result accounts for {len(self.successes) + len(self.failures)} "
                f"of {self.total_requested} requested items"
            )

    @classmethod
    def from_outcomes(cls, operation, kind, target_identifier, outcomes: Sequence[BulkItemOutcome], target=None):
        return cls(
            operation=operation,
            kind=kind,
            target_identifier=target_identifier,
            successes=tuple(o for o in outcomes if isinstance(o, BulkItemSuccess)),
            failures=tuple(o for o in outcomes if isinstance(o, BulkItemFailure)),
            total_requested=len(outcomes),
            target=target,
        )

    @property
    def success_count(self) -> int:
        return len(self.successes)

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def target_name(self) -> str:
        return self.target.display_name if self.target else self.target_identifier

    def summary(self) -> str:
        return f"{self.success_count}/{self.total_requested} users {self.operation.past_tense} successfully"


class BulkOrchestrator:
    def __init__(
        self,
        resolver: ResourceResolver,
        enrollments: EnrollmentService,
        batch_size: int = 3,
        batch_pause: float = 0.5,
        allow_ambiguous_target: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.resolver = resolver
        self.enrollments = enrollments
        self.batch_size = batch_size
        self.batch_pause = batch_pause
        self.allow_ambiguous_target = allow_ambiguous_target
        self._sleep = sleep

    @TraceManager.span("run_bulk", record_args=("kind", "target_identifier", "user_identifiers", "operation"))
    async def run_bulk(
        self,
        kind: ResourceKind,
        target_identifier: str,
        user_identifiers: Sequence[str],
        operation: Operation,
        options: Optional[EnrollmentOptions] = None,
    ) -> BulkOperationResult:
        """
        Apply `operation` for every user in `user_identifiers` against the
        resource of `kind` named by `target_identifier`.

        Raises AuthenticationFailed / GatewayUnavailable (after the current
        batch settles) and ValueError for invalid arguments; every other
        failure is reported per item.
        """
        if kind is ResourceKind.USER:
            raise ValueError("Bulk operations target a course or learning plan, not a user")
        if isinstance(user_identifiers, str):
            raise ValueError("user_identifiers must be a sequence of identifiers, not a string")

        identifiers = [str(value).strip() for value in user_identifiers]
        target_identifier = (target_identifier or "").strip()
        total = len(identifiers)

        if total == 0:
            return BulkOperationResult.from_outcomes(operation, kind, target_identifier, [])

        logger.info(f"Bulk {operation.value}: {total} user(s) -> {kind.value} '{target_identifier}'")

        target, reason = await self._resolve_target(kind, target_identifier)
        if target is None:
            logger.warning(f"Bulk {operation.value} aborted before any user call: {reason}")
            outcomes = [BulkItemFailure(email=ident, reason=reason) for ident in identifiers]
            return BulkOperationResult.from_outcomes(operation, kind, target_identifier, outcomes)

        outcomes: List[Optional[BulkItemOutcome]] = [None] * total
        for start in range(0, total, self.batch_size):
            positions = range(start, min(start + self.batch_size, total))
            results = await asyncio.gather(
                *(self._run_item(identifiers[i], i + 1, total, target, operation, options) for i in positions),
                return_exceptions=True,
            )
            fatal = next((r for r in results if isinstance(r, BaseException)), None)
            if fatal is not None:
                logger.error(f"Bulk {operation.value} aborted in batch starting at item {start + 1}: {fatal}")
                raise fatal
            for i, outcome in zip(positions, results):
                outcomes[i] = outcome

            if start + self.batch_size < total:
                logger.info(f"Pausing between batches (processed {start + len(positions)}/{total})")
                await self._sleep(self.batch_pause)

        result = BulkOperationResult.from_outcomes(operation, kind, target_identifier, outcomes, target)
        logger.info(f"Bulk {operation.value} completed: {result.summary()}")
        return result

    async def _resolve_target(self, kind: ResourceKind, identifier: str) -> Tuple[Optional[ResolvedResource], str]:
        if not identifier:
            return None, f"{kind.label} not found: {identifier}"
        try:
            if self.allow_ambiguous_target:
                target = await self.resolver.resolve(kind, identifier)
            else:
                target = await self.resolver.resolve_confident(kind, identifier)
        except ResourceNotFound as e:
            return None, str(e)
        except AmbiguousMatch as e:
            logger.warning(f"Refusing low-confidence target: {e}")
            return None, f"ambiguous {kind.label.lower()} match: {identifier}"
        except RemoteError as e:
            return None, f"{kind.label} lookup failed: {e.describe()}"
        return target, ""

    async def _run_item(
        self,
        identifier: str,
        position: int,
        total: int,
        target: ResolvedResource,
        operation: Operation,
        options: Optional[EnrollmentOptions],
    ) -> BulkItemOutcome:
        tag = f"[{position}/{total}]"
        if not identifier:
            return BulkItemFailure(email=identifier, reason="Empty user identifier", resource_id=target.id)

        try:
            user = await self.resolver.resolve(ResourceKind.USER, identifier)
        except ResourceNotFound:
            logger.info(f"{tag} User not found: {identifier}")
            return BulkItemFailure(email=identifier, reason="User not found", resource_id=target.id)
        except (AuthenticationFailed, GatewayUnavailable):
            raise
        except LMSError as e:
            logger.warning(f"{tag} User lookup failed for {identifier}: {e}")
            return BulkItemFailure(email=identifier, reason=_describe(e), resource_id=target.id)

        if not user.tier.confident:
            logger.info(f"{tag} No exact user match for {identifier} (closest: {user.display_name})")
            return BulkItemFailure(email=identifier, reason="User not found (no exact match)", resource_id=target.id)

        result = await self.enrollments.apply(operation, target.kind, user.id, target.id, options)
        if isinstance(result, RemoteError):
            logger.info(f"{tag} {operation.value} failed for {identifier}: {result.describe()}")
            return BulkItemFailure(email=identifier, reason=result.describe(), resource_id=target.id)

        logger.info(f"{tag} {identifier} {operation.past_tense} ({target.kind.value} {target.id})")
        return BulkItemSuccess(email=identifier, user_id=user.id, resource_id=target.id)


def _describe(error: LMSError) -> str:
    if isinstance(error, RemoteError):
        return error.describe()
    return str(error)
