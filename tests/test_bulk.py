import asyncio
import json

import httpx
import pytest

from app.lms.bulk import BulkItemFailure, BulkItemSuccess, BulkOperationResult, BulkOrchestrator
from app.lms.credentials import CredentialCache
from app.lms.enrollment import AssignmentType, EnrollmentLevel, EnrollmentOptions, EnrollmentService, Operation
from app.lms.errors import AuthenticationFailed, GatewayUnavailable
from app.lms.gateway import RemoteGateway
from app.lms.records import ResourceKind
from app.lms.resolver import ResourceResolver

COURSE = ResourceKind.COURSE
LP = ResourceKind.LEARNING_PLAN
ENROLL = Operation.ENROLL
UNENROLL = Operation.UNENROLL


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


def outcome_emails(result: BulkOperationResult):
    return [s.email for s in result.successes], [f.email for f in result.failures]


@pytest.mark.asyncio
async def test_end_to_end_learning_plan_enrollment(fake_lms, orchestrator):
    result = await orchestrator.run_bulk(LP, "Associate Memory Network", ["a@x.com", "ghost@x.com"], ENROLL)

    assert result.target.id == "277"
    assert result.target_name == "Associate Memory Network"
    assert result.successes == (BulkItemSuccess(email="a@x.com", user_id="101", resource_id="277"),)
    assert result.failures == (BulkItemFailure(email="ghost@x.com", reason="User not found", resource_id="277"),)
    assert result.summary() == "1/2 users enrolled successfully"
    assert fake_lms.enrollments == [("learning_plan", "101", "277")]


@pytest.mark.asyncio
async def test_enroll_body_for_learning_plan(fake_lms, orchestrator):
    await orchestrator.run_bulk(LP, "LP-005", ["a@x.com"], ENROLL)

    body = fake_lms.calls_to("POST", "/learningplan/v1/learningplans/enrollments")[0][3]
    assert body == {"learningplan_ids": ["277"], "user_ids": ["101"]}


@pytest.mark.asyncio
async def test_enroll_body_carries_course_options(fake_lms, orchestrator):
    options = EnrollmentOptions(
        level=EnrollmentLevel.TUTOR,
        assignment_type=AssignmentType.MANDATORY,
    )

    await orchestrator.run_bulk(COURSE, "Excel", ["b@x.com"], ENROLL, options)

    body = fake_lms.calls_to("POST", "/learn/v1/enrollments")[0][3]
    assert body == {
        "course_ids": ["2420"],
        "user_ids": ["102"],
        "level": "4",
        "assignment_type": "mandatory",
    }


@pytest.mark.asyncio
async def test_unenroll_sends_delete_with_body(fake_lms, orchestrator):
    result = await orchestrator.run_bulk(COURSE, "XL-200", ["c@x.com"], UNENROLL)

    assert result.success_count == 1
    assert result.summary() == "1/1 users unenrolled successfully"
    body = fake_lms.calls_to("DELETE", "/learn/v1/enrollments")[0][3]
    assert body == {"course_ids": ["2421"], "user_ids": ["103"]}


@pytest.mark.asyncio
async def test_one_failing_item_does_not_affect_siblings(fake_lms, orchestrator):
    fake_lms.failing_users["102"] = 500

    result = await orchestrator.run_bulk(COURSE, "Excel", ["a@x.com", "b@x.com", "c@x.com"], ENROLL)

    assert outcome_emails(result) == (["a@x.com", "c@x.com"], ["b@x.com"])
    assert result.failures[0].reason == "Remote call failed with status 500"
    assert result.total_requested == 3


@pytest.mark.asyncio
async def test_rejection_inside_success_body_is_a_failure(fake_lms, orchestrator):
    fake_lms.script(
        "POST",
        "/learn/v1/enrollments",
        httpx.Response(200, json={"data": {"enrolled": [], "errors": {"existing_enrollments": [{"user_id": 101}]}}}),
    )

    result = await orchestrator.run_bulk(COURSE, "Excel", ["a@x.com"], ENROLL)

    assert result.success_count == 0
    assert result.failures[0].reason == "User is already enrolled"


@pytest.mark.asyncio
async def test_unresolvable_target_fails_every_item_without_user_calls(fake_lms, orchestrator):
    users = ["a@x.com", "b@x.com", "c@x.com"]

    result = await orchestrator.run_bulk(LP, "Nonexistent Plan", users, ENROLL)

    assert result.success_count == 0
    assert [f.email for f in result.failures] == users
    assert {f.reason for f in result.failures} == {"Learning plan not found: Nonexistent Plan"}
    assert result.target is None
    assert fake_lms.searches(ResourceKind.USER) == []
    assert fake_lms.enrollments == []


@pytest.mark.asyncio
async def test_ambiguous_target_is_refused(fake_lms, orchestrator):
    result = await orchestrator.run_bulk(COURSE, "Advanced", ["a@x.com", "b@x.com"], ENROLL)

    assert result.success_count == 0
    assert {f.reason for f in result.failures} == {"ambiguous course match: Advanced"}
    assert fake_lms.enrollments == []


@pytest.mark.asyncio
async def test_ambiguous_target_allowed_when_configured(fake_lms, resolver, enrollments):
    orchestrator = BulkOrchestrator(resolver, enrollments, batch_pause=0, allow_ambiguous_target=True)

    result = await orchestrator.run_bulk(COURSE, "Advanced", ["a@x.com"], ENROLL)

    assert result.success_count == 1
    assert result.target.annotation == "ambiguous match"


@pytest.mark.asyncio
async def test_target_lookup_failure_is_reported_per_item(fake_lms, orchestrator):
    fake_lms.script("GET", "/learn/v1/courses", httpx.Response(400), httpx.Response(500))

    result = await orchestrator.run_bulk(COURSE, "Excel", ["a@x.com", "b@x.com"], ENROLL)

    assert {f.reason for f in result.failures} == {"Course lookup failed: Remote call failed with status 500"}


@pytest.mark.asyncio
async def test_partial_user_match_is_not_used(fake_lms, orchestrator):
    result = await orchestrator.run_bulk(COURSE, "Excel", ["Ali"], ENROLL)

    assert result.failures[0].reason == "User not found (no exact match)"
    assert fake_lms.enrollments == []


@pytest.mark.asyncio
async def test_numeric_and_username_identifiers(fake_lms, orchestrator):
    result = await orchestrator.run_bulk(COURSE, "2500", ["104", "bob"], ENROLL)

    assert [s.user_id for s in result.successes] == ["104", "102"]
    assert result.target.display_name == "Python Programming"


@pytest.mark.asyncio
async def test_blank_identifier_fails_alone(fake_lms, orchestrator):
    result = await orchestrator.run_bulk(COURSE, "Excel", ["a@x.com", "  "], ENROLL)

    assert result.success_count == 1
    assert result.failures[0].reason == "Empty user identifier"


@pytest.mark.asyncio
async def test_empty_user_list(fake_lms, orchestrator):
    result = await orchestrator.run_bulk(COURSE, "Excel", [], ENROLL)

    assert result.total_requested == 0
    assert result.successes == () and result.failures == ()
    assert fake_lms.calls == []
    assert result.summary() == "0/0 users enrolled successfully"


@pytest.mark.asyncio
async def test_batches_pause_between_groups(fake_lms, resolver, enrollments):
    sleep = RecordingSleep()
    orchestrator = BulkOrchestrator(resolver, enrollments, batch_size=3, batch_pause=0.5, sleep=sleep)
    users = ["a@x.com", "b@x.com", "c@x.com", "d@x.com", "101", "102", "103"]

    result = await orchestrator.run_bulk(COURSE, "Excel", users, ENROLL)

    assert result.success_count == 7
    # Three batches, two pauses
    assert sleep.delays == [0.5, 0.5]
    assert [s.email for s in result.successes] == users


@pytest.mark.asyncio
async def test_single_batch_does_not_pause(resolver, enrollments):
    sleep = RecordingSleep()
    orchestrator = BulkOrchestrator(resolver, enrollments, batch_size=3, batch_pause=0.5, sleep=sleep)

    await orchestrator.run_bulk(COURSE, "Excel", ["a@x.com", "b@x.com", "c@x.com"], ENROLL)

    assert sleep.delays == []


@pytest.mark.asyncio
async def test_authentication_failure_aborts_the_run(fake_lms, orchestrator):
    fake_lms.token_status = 401

    with pytest.raises(AuthenticationFailed):
        await orchestrator.run_bulk(COURSE, "Excel", ["a@x.com"], ENROLL)


@pytest.mark.asyncio
async def test_gateway_unavailable_during_user_lookup_propagates(fake_lms, orchestrator):
    # Both concurrent lookups exhaust their retries
    fake_lms.script("GET", "/manage/v1/user", *[httpx.ConnectError("refused") for _ in range(6)])

    with pytest.raises(GatewayUnavailable):
        await orchestrator.run_bulk(COURSE, "Excel", ["a@x.com", "b@x.com"], ENROLL)


@pytest.mark.asyncio
async def test_user_kind_and_plain_string_are_rejected(orchestrator):
    with pytest.raises(ValueError):
        await orchestrator.run_bulk(ResourceKind.USER, "a@x.com", ["b@x.com"], ENROLL)
    with pytest.raises(ValueError):
        await orchestrator.run_bulk(COURSE, "Excel", "a@x.com", ENROLL)


def test_result_enforces_conservation():
    with pytest.raises(ValueError):
        BulkOperationResult(
            operation=ENROLL,
            kind=COURSE,
            target_identifier="Excel",
            successes=(BulkItemSuccess(email="a@x.com", user_id="1", resource_id="2"),),
            failures=(),
            total_requested=2,
        )


def test_enrollment_options_reject_inverted_validity():
    from datetime import date

    with pytest.raises(ValueError):
        EnrollmentOptions(validity_start=date(2026, 2, 1), validity_end=date(2026, 1, 1))


def test_enrollment_payload_omits_unset_options():
    from datetime import date

    options = EnrollmentOptions(validity_end=date(2026, 12, 31))

    assert options.to_payload(COURSE) == {"level": "3", "date_expire_validity": "2026-12-31"}
    assert options.to_payload(LP) == {"date_expire_validity": "2026-12-31"}


@pytest.mark.asyncio
async def test_items_overlap_within_a_batch_and_batches_run_in_sequence(fake_lms, credential):
    events = []
    in_flight = 0
    peak = 0

    async def handler(request):
        nonlocal in_flight, peak
        if request.method == "POST" and request.url.path == "/learn/v1/enrollments":
            user_id = json.loads(request.content)["user_ids"][0]
            events.append(("start", user_id))
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.05)
            in_flight -= 1
            events.append(("end", user_id))
        elif request.url.path == "/manage/v1/user":
            events.append(("lookup", request.url.params["search_text"]))
        return fake_lms.handler(request)

    async def pause(delay):
        events.append(("pause", delay))

    async with httpx.AsyncClient(base_url="https://lms.test", transport=httpx.MockTransport(handler)) as client:
        gateway = RemoteGateway(client, CredentialCache(credential, client), retry_backoff=0)
        resolver = ResourceResolver(gateway)
        orchestrator = BulkOrchestrator(
            resolver, EnrollmentService(gateway), batch_size=3, batch_pause=0.5, sleep=pause
        )
        result = await orchestrator.run_bulk(COURSE, "Excel", ["a@x.com", "b@x.com", "c@x.com", "d@x.com"], ENROLL)

    assert result.success_count == 4
    assert peak == 3

    pause_at = events.index(("pause", 0.5))
    first_batch, second_batch = events[:pause_at], events[pause_at + 1:]
    assert {user for step, user in first_batch if step == "end"} == {"101", "102", "103"}
    assert second_batch == [("lookup", "d@x.com"), ("start", "104"), ("end", "104")]
