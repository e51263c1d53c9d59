
from typing import List

from app.core.intents import INTENT_DESCRIPTIONS, INTENT_EXAMPLES
from app.lms.bulk import BulkOperationResult
from app.lms.enrollment import EnrollmentRecord, EnrollmentState
from app.lms.records import ResolvedResource, ResourceKind
from app.lms.status import EnrollmentStatus, UserEnrollments

MAX_LISTED_SUCCESSES = 10
MAX_LISTED_FAILURES = 5
MAX_LISTED_ENROLLMENTS = 20


class ReplyFormatter:
    """
    Markdown replies for the chat transcript.
    """

    @staticmethod
    def resource(resource: ResolvedResource) -> str:
        lines = [f"**{resource.kind.label}**: {resource.display_name} (ID: {resource.id})"]
        if resource.kind is ResourceKind.USER and resource.email:
            lines.append(f"Email: {resource.email}")
        code = resource.raw.get("code")
        if code and resource.kind is not ResourceKind.USER:
            lines.append(f"Code: {code}")
        if resource.annotation:
            lines.append(f"_Note: {resource.annotation}; check this is the {resource.kind.label.lower()} you meant._")
        return "\n".join(lines)

    @staticmethod
    def search_results(kind: ResourceKind, query: str, results: List[ResolvedResource]) -> str:
        if not results:
            return f"No {kind.label.lower()} found matching \"{query}\"."
        lines = [f"Found {len(results)} {kind.label.lower()} result(s) for \"{query}\":", ""]
        for index, item in enumerate(results, start=1):
            suffix = f" - {item.email}" if kind is ResourceKind.USER and item.email else ""
            lines.append(f"{index}. **{item.display_name}** (ID: {item.id}){suffix}")
        return "\n".join(lines)

    @staticmethod
    def bulk_result(result: BulkOperationResult) -> str:
        action = "Enrollment" if result.operation.value == "enroll" else "Unenrollment"
        lines = [
            f"**Bulk {result.kind.label} {action} Results**",
            "",
            f"**{result.kind.label}**: {result.target_name}",
            f"**Summary**: {result.summary()}",
            "",
        ]

        if result.successes:
            lines.append(f"**Successful ({result.success_count})**:")
            for index, success in enumerate(result.successes[:MAX_LISTED_SUCCESSES], start=1):
                lines.append(f"{index}. {success.email}")
            if result.success_count > MAX_LISTED_SUCCESSES:
                lines.append(f"... and {result.success_count - MAX_LISTED_SUCCESSES} more users")
            lines.append("")

        if result.failures:
            lines.append(f"**Failed ({result.failure_count})**:")
            for index, failure in enumerate(result.failures[:MAX_LISTED_FAILURES], start=1):
                lines.append(f"{index}. {failure.email} - {failure.reason}")
            if result.failure_count > MAX_LISTED_FAILURES:
                lines.append(f"... and {result.failure_count - MAX_LISTED_FAILURES} more failures")
            lines.append("")
            lines.append("Check failed addresses for typos, confirm the users exist, and retry them individually.")
        elif result.total_requested:
            lines.append(f"All users {result.operation.past_tense} successfully.")

        return "\n".join(lines).rstrip()

    @staticmethod
    def enrollment_status(status: EnrollmentStatus) -> str:
        kind = status.target.kind.label.lower()
        if not status.enrolled:
            return f"**{status.user.display_name}** is not enrolled in {kind} **{status.target.display_name}**."
        lines = [
            f"**{status.user.display_name}** is enrolled in {kind} **{status.target.display_name}**.",
            "",
            f"**Status**: {_state_label(status.state)}",
        ]
        record = status.record
        if record.progress is not None:
            lines.append(f"**Progress**: {record.progress}%")
        if record.enrolled_at:
            lines.append(f"**Enrolled**: {record.enrolled_at}")
        if record.completed_at:
            lines.append(f"**Completed**: {record.completed_at}")
        return "\n".join(lines)

    @staticmethod
    def user_enrollments(listing: UserEnrollments) -> str:
        if not listing.total:
            return f"**{listing.user.display_name}** has no course or learning plan enrollments."
        lines = [f"**Enrollments for {listing.user.display_name}** ({listing.total} total)", ""]
        for title, records in (("Courses", listing.courses), ("Learning plans", listing.learning_plans)):
            if not records:
                continue
            lines.append(f"**{title} ({len(records)})**:")
            for index, record in enumerate(records[:MAX_LISTED_ENROLLMENTS], start=1):
                lines.append(f"{index}. {_record_name(record)} - {_state_label(record.state)}")
            if len(records) > MAX_LISTED_ENROLLMENTS:
                lines.append(f"... and {len(records) - MAX_LISTED_ENROLLMENTS} more")
            lines.append("")
        return "\n".join(lines).rstrip()

    @staticmethod
    def ambiguous(resolved: ResolvedResource) -> str:
        label = resolved.kind.label.lower()
        return (
            f"I couldn't find an exact {label} match. The closest is **{resolved.display_name}** "
            f"(ID: {resolved.id}); use its id or exact name to confirm."
        )

    @staticmethod
    def help() -> str:
        lines = ["Here is what I can do:", ""]
        for intent, description in INTENT_DESCRIPTIONS.items():
            lines.append(f"- **{intent}**: {description}")
            lines.append(f"  e.g. `{INTENT_EXAMPLES[intent]}`")
        return "\n".join(lines)

    @staticmethod
    def unknown() -> str:
        return "Sorry, I didn't understand that. Type **help** to see the commands I support."


def _state_label(state: EnrollmentState) -> str:
    return state.value.replace("_", " ").capitalize()


def _record_name(record: EnrollmentRecord) -> str:
    name = record.resource_name or f"{record.kind.label} {record.resource_id}"
    return f"{name} (ID: {record.resource_id})"
