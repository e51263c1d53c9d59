from .errors import (
    LMSError,
    AuthenticationFailed,
    RemoteError,
    ProtocolError,
    GatewayUnavailable,
    ResourceNotFound,
    AmbiguousMatch,
)
from .records import ResourceKind, MatchTier, ResolvedResource, first_non_empty
from .credentials import Credential, CachedToken, CredentialCache
from .gateway import RemoteGateway
from .resolver import ResourceResolver
from .enrollment import (
    EnrollmentLevel,
    AssignmentType,
    EnrollmentOptions,
    EnrollmentRecord,
    EnrollmentState,
    EnrollmentService,
    Operation,
)
from .bulk import (
    BulkItemSuccess,
    BulkItemFailure,
    BulkOperationResult,
    BulkOrchestrator,
)
from .status import EnrollmentInspector, EnrollmentStatus, UserEnrollments
