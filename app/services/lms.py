
import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from app.core import intents
from app.core.settings import AppSettings, LMSSettings, settings
from app.lms.bulk import BulkOperationResult, BulkOrchestrator
from app.lms.credentials import Credential, CredentialCache
from app.lms.enrollment import EnrollmentOptions, EnrollmentRecord, EnrollmentService, Operation
from app.lms.errors import AmbiguousMatch, RemoteError, ResourceNotFound
from app.lms.gateway import RemoteGateway
from app.lms.records import ResolvedResource, ResourceKind
from app.lms.resolver import NUMERIC_ID, ResourceResolver
from app.lms.status import EnrollmentInspector, EnrollmentStatus, UserEnrollments
from app.services.replies import ReplyFormatter

logger = logging.getLogger(__name__)


class LMSService:
    """
    Entry point for upstream callers: owns the HTTP client and wires the
    credential cache, gateway, resolver, enrollment calls, bulk
    orchestrator and enrollment-status lookups together.
    """

    def __init__(
        self,
        resolver: ResourceResolver,
        orchestrator: BulkOrchestrator,
        http_client: Optional[httpx.AsyncClient] = None,
        inspector: Optional[EnrollmentInspector] = None,
    ):
        self.resolver = resolver
        self.orchestrator = orchestrator
        self.inspector = inspector or EnrollmentInspector(resolver, orchestrator.enrollments)
        self._http_client = http_client

    @classmethod
    def from_settings(
        cls,
        lms_settings: LMSSettings,
        app_settings: AppSettings = settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "LMSService":
        gw = app_settings.gateway
        bulk = app_settings.bulk

        client = httpx.AsyncClient(
            base_url=lms_settings.base_url,
            timeout=gw.request_timeout,
            transport=transport,
        )
        credentials = CredentialCache(
            Credential.from_settings(lms_settings),
            client,
            ttl_fallback=gw.token_ttl_fallback,
        )
        gateway = RemoteGateway(client, credentials, max_retries=gw.max_retries, retry_backoff=gw.retry_backoff)
        resolver = ResourceResolver(
            gateway,
            page_size=bulk.resolver_page_size,
            allow_fallback=bulk.resolver_allow_fallback,
        )
        orchestrator = BulkOrchestrator(
            resolver,
            EnrollmentService(gateway),
            batch_size=bulk.batch_size,
            batch_pause=bulk.batch_pause,
            allow_ambiguous_target=bulk.allow_ambiguous_target,
        )
        logger.info(f"LMS service configured for {lms_settings.base_url}")
        return cls(resolver, orchestrator, http_client=client)

    async def resolve(self, kind: ResourceKind, identifier: str, require_confident: bool = False) -> ResolvedResource:
        if require_confident:
            return await self.resolver.resolve_confident(kind, identifier)
        return await self.resolver.resolve(kind, identifier)

    async def search(self, kind: ResourceKind, text: str, limit: int = 10) -> List[ResolvedResource]:
        return await self.resolver.search(kind, text, limit=limit)

    async def run_bulk(
        self,
        kind: ResourceKind,
        target_identifier: str,
        user_identifiers: Sequence[str],
        operation: Operation,
        options: Optional[EnrollmentOptions] = None,
    ) -> BulkOperationResult:
        return await self.orchestrator.run_bulk(kind, target_identifier, user_identifiers, operation, options)

    async def enrollment_status(
        self, kind: ResourceKind, user_identifier: str, target_identifier: str
    ) -> EnrollmentStatus:
        return await self.inspector.check(kind, user_identifier, target_identifier)

    async def user_enrollments(self, user_identifier: str) -> UserEnrollments:
        return await self.inspector.list_for_user(user_identifier)

    async def handle_message(self, message: str) -> Dict[str, Any]:
        """
        Route one chat message to the core and render the reply.
        AuthenticationFailed and GatewayUnavailable propagate to the caller.
        """
        try:
            command = intents.parse_command(message)
        except ValueError as e:
            return _reply(f"I couldn't read that request: {e}", intents.UNKNOWN, "error")

        logger.info(f"Chat intent '{command.intent}' (kind={command.kind and command.kind.value})")

        if command.intent == intents.HELP:
            return _reply(ReplyFormatter.help(), command.intent)

        if command.intent == intents.FIND:
            return await self._handle_find(command)

        if command.intent in (intents.ENROLL, intents.UNENROLL):
            return await self._handle_bulk(command)

        if command.intent == intents.CHECK_ENROLLMENT:
            return await self._handle_check(command)

        if command.intent == intents.LIST_ENROLLMENTS:
            return await self._handle_listing(command)

        return _reply(ReplyFormatter.unknown(), command.intent, "error")

    async def _handle_find(self, command: intents.ParsedCommand) -> Dict[str, Any]:
        kind, query = command.kind, command.query
        exact_lookup = NUMERIC_ID.fullmatch(query) or (kind is ResourceKind.USER and intents.EMAIL_PATTERN.fullmatch(query))
        try:
            if exact_lookup:
                resource = await self.resolve(kind, query)
                return _reply(ReplyFormatter.resource(resource), command.intent, data={"resource": resource_data(resource)})
            results = await self.search(kind, query)
        except ResourceNotFound as e:
            return _reply(f"{e}.", command.intent, "not_found")
        except RemoteError as e:
            return _reply(f"The LMS could not complete the lookup: {e.describe()}.", command.intent, "error")

        return _reply(
            ReplyFormatter.search_results(kind, query, results),
            command.intent,
            "ok" if results else "not_found",
            data={"results": [resource_data(r) for r in results]},
        )

    async def _handle_bulk(self, command: intents.ParsedCommand) -> Dict[str, Any]:
        if not command.users:
            return _reply("I need at least one user email or id for that.", command.intent, "error")
        if not command.target:
            return _reply(f"Please tell me which {command.kind.label.lower()} to use.", command.intent, "error")

        result = await self.run_bulk(
            command.kind,
            command.target,
            command.users,
            Operation(command.intent),
            command.options,
        )
        if result.failure_count == 0:
            status = "ok"
        elif result.success_count:
            status = "partial"
        else:
            status = "error"
        return _reply(ReplyFormatter.bulk_result(result), command.intent, status, data={"bulk": bulk_result_data(result)})

    async def _handle_check(self, command: intents.ParsedCommand) -> Dict[str, Any]:
        user, target = command.users[0], command.target
        try:
            status = await self.enrollment_status(command.kind, user, target)
        except ResourceNotFound as e:
            return _reply(f"{e}.", command.intent, "not_found")
        except AmbiguousMatch as e:
            return _reply(ReplyFormatter.ambiguous(e.resolved), command.intent, "error")
        except RemoteError as e:
            return _reply(f"The LMS could not complete the lookup: {e.describe()}.", command.intent, "error")

        return _reply(
            ReplyFormatter.enrollment_status(status),
            command.intent,
            data={"enrollment": enrollment_status_data(status)},
        )

    async def _handle_listing(self, command: intents.ParsedCommand) -> Dict[str, Any]:
        try:
            listing = await self.user_enrollments(command.users[0])
        except ResourceNotFound as e:
            return _reply(f"{e}.", command.intent, "not_found")
        except AmbiguousMatch as e:
            return _reply(ReplyFormatter.ambiguous(e.resolved), command.intent, "error")
        except RemoteError as e:
            return _reply(f"The LMS could not list enrollments: {e.describe()}.", command.intent, "error")

        return _reply(
            ReplyFormatter.user_enrollments(listing),
            command.intent,
            data={"enrollments": user_enrollments_data(listing)},
        )

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()


def _reply(message: str, intent: str, status: str = "ok", data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"message": message, "intent": intent, "status": status, "data": data or {}}


def resource_data(resource: ResolvedResource) -> Dict[str, Any]:
    return {
        "id": resource.id,
        "display_name": resource.display_name,
        "kind": resource.kind.value,
        "tier": resource.tier.name.lower(),
        "annotation": resource.annotation,
    }


def bulk_result_data(result: BulkOperationResult) -> Dict[str, Any]:
    return {
        "operation": result.operation.value,
        "kind": result.kind.value,
        "target_identifier": result.target_identifier,
        "target": resource_data(result.target) if result.target else None,
        "successes": [
            {"email": s.email, "user_id": s.user_id, "resource_id": s.resource_id} for s in result.successes
        ],
        "failures": [
            {"email": f.email, "reason": f.reason, "resource_id": f.resource_id} for f in result.failures
        ],
        "total_requested": result.total_requested,
    }


def enrollment_record_data(record: EnrollmentRecord) -> Dict[str, Any]:
    return {
        "kind": record.kind.value,
        "resource_id": record.resource_id,
        "resource_name": record.resource_name,
        "state": record.state.value,
        "enrolled_at": record.enrolled_at,
        "completed_at": record.completed_at,
        "progress": record.progress,
    }


def enrollment_status_data(status: EnrollmentStatus) -> Dict[str, Any]:
    return {
        "user": resource_data(status.user),
        "target": resource_data(status.target),
        "enrolled": status.enrolled,
        "state": status.state.value,
        "record": enrollment_record_data(status.record) if status.record else None,
    }


def user_enrollments_data(listing: UserEnrollments) -> Dict[str, Any]:
    return {
        "user": resource_data(listing.user),
        "courses": [enrollment_record_data(r) for r in listing.courses],
        "learning_plans": [enrollment_record_data(r) for r in listing.learning_plans],
        "total": listing.total,
    }
