"""Exception taxonomy for calls against the LMS platform."""
from typing import Optional, Union


class LMSError(Exception):
    """Base exception for all LMS operations."""
    pass


class AuthenticationFailed(LMSError):
    """Credential exchange against the token endpoint was rejected.

    Fatal for the whole request: nothing downstream can be attempted
    without a token.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RemoteError(LMSError):
    """Non-2xx response from a single remote call.

    The gateway returns instances of this class rather than raising them;
    an HTTP failure status is data for the caller to inspect.

    Attributes:
        status_code: HTTP status code, or "timeout" when the call timed out
        raw_body: Response body as text (may be empty)
        endpoint: Path that was called
    """

    def __init__(self, status_code: Union[int, str], raw_body: str = "", endpoint: str = ""):
        self.status_code = status_code
        self.raw_body = raw_body
        self.endpoint = endpoint
        super().__init__(f"[{status_code}] {endpoint}: {raw_body[:200]}")

    @property
    def is_timeout(self) -> bool:
        return self.status_code == "timeout"

    def describe(self) -> str:
        """Short human-readable reason suitable for a per-item failure."""
        if self.is_timeout:
            return "Remote call timed out"
        return f"Remote call failed with status {self.status_code}"


class ProtocolError(RemoteError):
    """A 2xx response whose body could not be parsed as JSON."""

    def __init__(self, raw_body: str = "", endpoint: str = ""):
        super().__init__("protocol", raw_body, endpoint)

    def describe(self) -> str:
        return "Remote platform returned an unreadable response"


class GatewayUnavailable(LMSError):
    """Transport-level failure (DNS, connection refused) after retries."""
    pass


class ResourceNotFound(LMSError):
    """Resolver found zero candidates for an identifier."""

    def __init__(self, kind, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.label} not found: {identifier}")


class AmbiguousMatch(LMSError):
    """Resolver matched only at a low-confidence tier.

    Raised by callers that require a confident match; carries the
    candidate that would have been used.
    """

    def __init__(self, kind, identifier: str, resolved):
        self.kind = kind
        self.identifier = identifier
        self.resolved = resolved
        super().__init__(
            f"ambiguous {kind.label.lower()} match: {identifier} "
            f"(closest: {resolved.display_name}, id {resolved.id})"
        )
