
import re
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from app.lms.enrollment import AssignmentType, EnrollmentLevel, EnrollmentOptions
from app.lms.records import ResourceKind

# Valid Intents
ENROLL = "enroll"
UNENROLL = "unenroll"
FIND = "find"
CHECK_ENROLLMENT = "check_enrollment"
LIST_ENROLLMENTS = "list_enrollments"
HELP = "help"
UNKNOWN = "unknown"

# Intent Metadata for the help reply
INTENT_DESCRIPTIONS = {
    ENROLL: "Enroll one or more users (by email or id) in a course or learning plan",
    UNENROLL: "Remove one or more users from a course or learning plan",
    FIND: "Look up a user, course or learning plan by name, code, email or id",
    CHECK_ENROLLMENT: "Check whether a user is enrolled in a course or learning plan",
    LIST_ENROLLMENTS: "List every course and learning plan a user is enrolled in",
    HELP: "Show what the assistant can do",
}

INTENT_EXAMPLES = {
    ENROLL: "enroll john@co.com, sarah@co.com in course Excel Training as tutor with assignment type mandatory until 2025-12-31",
    UNENROLL: "remove john@co.com from learning plan Leadership Development",
    FIND: "find course Python Programming",
    CHECK_ENROLLMENT: "is john@co.com enrolled in course Excel Training?",
    LIST_ENROLLMENTS: "show enrollments for john@co.com",
    HELP: "help",
}

EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
DATE_PATTERN = r"(\d{4}-\d{2}-\d{2})"

_KIND_WORDS = r"(?P<kind>course|training|learning\s+plan|learning\s+path|learningplan|lp|user)"

_UNENROLL = re.compile(
    r"^\s*(?:bulk\s+)?(?:unenroll|un-enroll|remove|drop)\s+(?P<users>.+?)\s+(?:from|out\s+of)\s+"
    + _KIND_WORDS + r"\s+(?P<target>.+?)\s*[.!?]*\s*$",
    re.IGNORECASE,
)
_ENROLL = re.compile(
    r"^\s*(?:bulk\s+)?(?:enroll|enrol|add|assign|register)\s+(?P<users>.+?)\s+(?:in|into|to|for)\s+"
    + _KIND_WORDS + r"\s+(?P<target>.+?)\s*[.!?]*\s*$",
    re.IGNORECASE,
)
_FIND = re.compile(
    r"^\s*(?:find|search(?:\s+for)?|look\s*up|lookup|show|who\s+is|get)\s+(?:(?:the|a)\s+)?(?:"
    + _KIND_WORDS + r"s?\s+)?(?P<query>.+?)\s*[.!?]*\s*$",
    re.IGNORECASE,
)
_CHECK = re.compile(
    r"^\s*(?:(?:check|verify)\s+(?:if\s+|whether\s+)?)?(?:is\s+)?(?!what\b)(?:user\s+)?(?P<user>.+?)\s+(?:is\s+)?"
    r"enrolled\s+(?:in|into|on)\s+" + _KIND_WORDS + r"\s+(?P<target>.+?)\s*[.!?]*\s*$",
    re.IGNORECASE,
)
_ENROLLMENTS = re.compile(
    r"^\s*(?:(?:show|list|get)\s+(?:me\s+)?(?:all\s+)?(?:the\s+)?enrollments?\s+(?:for|of)\s+(?:user\s+)?(?P<user>.+?)"
    r"|what\s+is\s+(?:user\s+)?(?P<user_alt>.+?)\s+enrolled\s+in)\s*[.!?]*\s*$",
    re.IGNORECASE,
)
_HELP = re.compile(r"^\s*(?:help|what\s+can\s+you\s+do|commands)\b", re.IGNORECASE)

# Trailing clauses that carry options rather than part of the target name
_OPTION_TAIL = re.compile(
    r"\s+(?:as\s+(?:a\s+|an\s+)?(?:learner|student|tutor|instructor)\b|with\s+assignment|assignment\s+type|"
    r"(?:from|starting|start)\s+\d{4}-|(?:until|to|due|ending|expiring|expires)\s+\d{4}-)"
    # Courtesy words other than "please" need a comma so names like "Leadership Now" survive
    r"|\s*,\s*(?:please|now|immediately|today|asap)\s*$|\s+please\s*$",
    re.IGNORECASE,
)

_LEVELS = {
    "learner": EnrollmentLevel.LEARNER,
    "student": EnrollmentLevel.LEARNER,
    "tutor": EnrollmentLevel.TUTOR,
    "instructor": EnrollmentLevel.INSTRUCTOR,
}


@dataclass
class ParsedCommand:
    intent: str
    kind: Optional[ResourceKind] = None
    target: Optional[str] = None
    users: List[str] = field(default_factory=list)
    options: EnrollmentOptions = field(default_factory=EnrollmentOptions)
    query: Optional[str] = None


def parse_kind(word: Optional[str]) -> Optional[ResourceKind]:
    if not word:
        return None
    word = re.sub(r"\s+", " ", word.lower())
    if word in ("course", "training"):
        return ResourceKind.COURSE
    if word in ("learning plan", "learning path", "learningplan", "lp"):
        return ResourceKind.LEARNING_PLAN
    if word == "user":
        return ResourceKind.USER
    return None


def extract_users(text: str) -> List[str]:
    """Emails in order of appearance; otherwise comma/and separated tokens (ids, usernames)."""
    emails = EMAIL_PATTERN.findall(text)
    if emails:
        seen = []
        for email in emails:
            if email.lower() not in (s.lower() for s in seen):
                seen.append(email)
        return seen
    parts = re.split(r"\s*(?:,|;|\band\b)\s*", text, flags=re.IGNORECASE)
    return [p.strip() for p in parts if p.strip()]


def extract_options(message: str) -> EnrollmentOptions:
    level = EnrollmentLevel.LEARNER
    level_match = re.search(r"\bas\s+(?:a\s+|an\s+)?(learner|student|tutor|instructor)\b", message, re.IGNORECASE)
    if level_match:
        level = _LEVELS[level_match.group(1).lower()]

    assignment = AssignmentType.NONE
    assignment_match = re.search(
        r"\b(?:assignment(?:\s+type)?\s*(?:of|as|:|=)?\s*)(mandatory|required|recommended|optional|none)\b",
        message,
        re.IGNORECASE,
    )
    if assignment_match:
        assignment = AssignmentType(assignment_match.group(1).lower())

    start = _find_date(message, r"(?:from|starting|start)")
    end = _find_date(message, r"(?:until|to|due|ending|expiring|expires)")
    return EnrollmentOptions(level=level, assignment_type=assignment, validity_start=start, validity_end=end)


def _find_date(message: str, lead: str) -> Optional[date]:
    match = re.search(r"\b" + lead + r"\s+(?:on\s+)?" + DATE_PATTERN, message, re.IGNORECASE)
    if not match:
        return None
    return date.fromisoformat(match.group(1))


def _clean_target(raw: str) -> str:
    match = _OPTION_TAIL.search(raw)
    target = raw[:match.start()] if match else raw
    return target.strip().strip("\"'").strip()


def parse_command(message: str) -> ParsedCommand:
    """
    Keyword/regex command parser. Raises ValueError for malformed option
    values (e.g. an impossible date or start after end).
    """
    text = (message or "").strip()
    if not text:
        return ParsedCommand(intent=UNKNOWN)

    if _HELP.match(text):
        return ParsedCommand(intent=HELP)

    match = _ENROLLMENTS.match(text)
    if match:
        user = (match.group("user") or match.group("user_alt")).strip().strip("\"'")
        return ParsedCommand(intent=LIST_ENROLLMENTS, kind=ResourceKind.USER, users=[user])

    match = _CHECK.match(text)
    if match:
        kind = parse_kind(match.group("kind"))
        if kind is not None and kind is not ResourceKind.USER:
            return ParsedCommand(
                intent=CHECK_ENROLLMENT,
                kind=kind,
                target=_clean_target(match.group("target")),
                users=[match.group("user").strip().strip("\"'")],
            )

    for intent, pattern in ((UNENROLL, _UNENROLL), (ENROLL, _ENROLL)):
        match = pattern.match(text)
        if not match:
            continue
        kind = parse_kind(match.group("kind"))
        if kind is None or kind is ResourceKind.USER:
            continue
        options = extract_options(text) if intent == ENROLL else EnrollmentOptions()
        return ParsedCommand(
            intent=intent,
            kind=kind,
            target=_clean_target(match.group("target")),
            users=extract_users(match.group("users")),
            options=options,
        )

    match = _FIND.match(text)
    if match:
        query = match.group("query").strip().strip("\"'")
        kind = parse_kind(match.group("kind"))
        if kind is None and EMAIL_PATTERN.fullmatch(query):
            kind = ResourceKind.USER
        return ParsedCommand(intent=FIND, kind=kind or ResourceKind.COURSE, query=query)

    return ParsedCommand(intent=UNKNOWN)
