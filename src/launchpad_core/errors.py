"""Exception hierarchy for launchpad-core.

All custom exceptions inherit from PromotionError so callers can catch every
engine error with a single except clause. Each exception carries the CLI exit
code used by ``launchpad`` commands.

Exception Hierarchy:
    PromotionError (base)
    ├── MalformedVersionError          # Release identifier does not match the grammar
    ├── ResolutionError                # No promotion plan for the version
    ├── InvalidTransitionError         # State change not in the transition table
    ├── CancellationNotSupportedError  # Cancel requested while deploying
    ├── RequestNotFoundError           # Unknown promotion request id
    ├── RollbackUnavailableError       # No earlier artifact recorded for the environment
    ├── SeparationOfDutiesError        # Requester tried to approve their own request
    ├── ConfigurationError             # Config file missing or invalid
    ├── AssertionVerificationError     # Federated assertion failed signature/claim checks
    ├── RoleAssumptionError            # Role assumption or identity query refused
    ├── ContextInvalidatedError        # Credentials read after the context was invalidated
    └── TransientCollaboratorError     # Build/test infrastructure hiccup, retryable

Exit Codes:
    0  - Success
    1  - General error (PromotionError)
    2  - Malformed version
    3  - Request or rollback target not found
    5  - Configuration error
    9  - Invalid transition / resolution / unsupported cancellation
    11 - Separation of duties violation
    12 - Authorization chain error

Example:
    >>> from launchpad_core.errors import MalformedVersionError
    >>> raise MalformedVersionError("1.2.0", "missing 'v' prefix")
    Traceback (most recent call last):
        ...
    MalformedVersionError: Malformed version '1.2.0': missing 'v' prefix
"""

from __future__ import annotations


class PromotionError(Exception):
    """Base exception for all launchpad-core errors.

    Attributes:
        exit_code: CLI exit code for this error type (default: 1).
    """

    exit_code: int = 1


class MalformedVersionError(PromotionError):
    """Raised when a release identifier does not match the tag grammar.

    Input-level error: never retried, and raised before any request exists.

    Attributes:
        raw: The rejected identifier.
        reason: Which part of the grammar was violated.
        exit_code: CLI exit code (2).
    """

    exit_code: int = 2

    def __init__(self, raw: str, reason: str) -> None:
        """Initialize MalformedVersionError.

        Args:
            raw: The rejected identifier.
            reason: Which part of the grammar was violated.
        """
        self.raw = raw
        self.reason = reason
        super().__init__(f"Malformed version '{raw}': {reason}")


class ResolutionError(PromotionError):
    """Raised when a version cannot be mapped to a promotion plan.

    Attributes:
        version: Raw version string.
        reason: Why resolution failed.
        exit_code: CLI exit code (9).
    """

    exit_code: int = 9

    def __init__(self, version: str, reason: str) -> None:
        """Initialize ResolutionError.

        Args:
            version: Raw version string.
            reason: Why resolution failed.
        """
        self.version = version
        self.reason = reason
        super().__init__(f"Cannot resolve promotion plan for {version}: {reason}")


class InvalidTransitionError(PromotionError):
    """Raised when a request is asked to move along an edge the table forbids.

    Attributes:
        from_state: Current state value.
        to_state: Requested state value.
        reason: Optional extra context.
        exit_code: CLI exit code (9).
    """

    exit_code: int = 9

    def __init__(self, from_state: str, to_state: str, reason: str | None = None) -> None:
        """Initialize InvalidTransitionError.

        Args:
            from_state: Current state value.
            to_state: Requested state value.
            reason: Optional extra context.
        """
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        msg = f"Invalid transition {from_state} -> {to_state}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class CancellationNotSupportedError(InvalidTransitionError):
    """Raised when cancel is requested for a request that is applying changes.

    An in-flight apply must reach deployed or failed first.
    """

    def __init__(self, request_id: str, state: str) -> None:
        """Initialize CancellationNotSupportedError.

        Args:
            request_id: The request that was asked to cancel.
            state: Its current state.
        """
        self.request_id = request_id
        super().__init__(
            from_state=state,
            to_state="cancelled",
            reason=f"request {request_id} cannot be cancelled while {state}",
        )


class RequestNotFoundError(PromotionError):
    """Raised when a promotion request id is unknown.

    Attributes:
        request_id: The id that was looked up.
        exit_code: CLI exit code (3).
    """

    exit_code: int = 3

    def __init__(self, request_id: str) -> None:
        """Initialize RequestNotFoundError.

        Args:
            request_id: The id that was looked up.
        """
        self.request_id = request_id
        super().__init__(f"Promotion request not found: {request_id}")


class RollbackUnavailableError(PromotionError):
    """Raised when no earlier deployment is recorded for the environment.

    Attributes:
        environment: Environment that was asked to roll back.
        request_id: The deployed request whose predecessor was sought.
        exit_code: CLI exit code (3).
    """

    exit_code: int = 3

    def __init__(self, environment: str, request_id: str) -> None:
        """Initialize RollbackUnavailableError.

        Args:
            environment: Environment that was asked to roll back.
            request_id: The deployed request whose predecessor was sought.
        """
        self.environment = environment
        self.request_id = request_id
        super().__init__(
            f"No previous deployment recorded for {environment} before request {request_id}"
        )


class SeparationOfDutiesError(PromotionError):
    """Raised when the requester of a promotion tries to approve it.

    Attributes:
        reviewer: Identity attempting the approval.
        request_id: Request being approved.
        exit_code: CLI exit code (11).
    """

    exit_code: int = 11

    def __init__(self, reviewer: str, request_id: str) -> None:
        """Initialize SeparationOfDutiesError.

        Args:
            reviewer: Identity attempting the approval.
            request_id: Request being approved.
        """
        self.reviewer = reviewer
        self.request_id = request_id
        super().__init__(
            f"Separation of duties violation: '{reviewer}' requested {request_id} "
            "and cannot approve it."
        )


class ConfigurationError(PromotionError):
    """Raised when the engine configuration cannot be loaded or validated.

    Attributes:
        source: Path or description of the config source.
        reason: Validation or IO error text.
        exit_code: CLI exit code (5).
    """

    exit_code: int = 5

    def __init__(self, source: str, reason: str) -> None:
        """Initialize ConfigurationError.

        Args:
            source: Path or description of the config source.
            reason: Validation or IO error text.
        """
        self.source = source
        self.reason = reason
        super().__init__(f"Invalid configuration in {source}: {reason}")


class AssertionVerificationError(PromotionError):
    """Raised when a federated identity assertion fails verification.

    Attributes:
        reason: Why the assertion was rejected.
        expired: True when the only problem is the assertion's expiry.
        exit_code: CLI exit code (12).
    """

    exit_code: int = 12

    def __init__(self, reason: str, *, expired: bool = False) -> None:
        """Initialize AssertionVerificationError.

        Args:
            reason: Why the assertion was rejected.
            expired: True when the assertion is past its expiry.
        """
        self.reason = reason
        self.expired = expired
        super().__init__(f"Identity assertion rejected: {reason}")


class RoleAssumptionError(PromotionError):
    """Raised by role assumers when a hop of the credential chain is refused.

    Attributes:
        role: Role identifier that was requested.
        reason: Provider error text.
        expired: True when the provider reports expired credentials.
        exit_code: CLI exit code (12).
    """

    exit_code: int = 12

    def __init__(self, role: str, reason: str, *, expired: bool = False) -> None:
        """Initialize RoleAssumptionError.

        Args:
            role: Role identifier that was requested.
            reason: Provider error text.
            expired: True when the provider reports expired credentials.
        """
        self.role = role
        self.reason = reason
        self.expired = expired
        super().__init__(f"Role assumption failed for {role}: {reason}")


class ContextInvalidatedError(PromotionError):
    """Raised when credentials are read from an invalidated authorization context.

    Attributes:
        environment: Environment the context was issued for.
        exit_code: CLI exit code (12).
    """

    exit_code: int = 12

    def __init__(self, environment: str) -> None:
        """Initialize ContextInvalidatedError.

        Args:
            environment: Environment the context was issued for.
        """
        self.environment = environment
        super().__init__(f"Authorization context for {environment} has been invalidated")


class TransientCollaboratorError(PromotionError):
    """Raised by build/test collaborators for infrastructure-transient failures.

    The state machine retries these up to the configured bound.
    """


__all__ = [
    "AssertionVerificationError",
    "CancellationNotSupportedError",
    "ConfigurationError",
    "ContextInvalidatedError",
    "InvalidTransitionError",
    "MalformedVersionError",
    "PromotionError",
    "RequestNotFoundError",
    "ResolutionError",
    "RoleAssumptionError",
    "RollbackUnavailableError",
    "SeparationOfDutiesError",
    "TransientCollaboratorError",
]
