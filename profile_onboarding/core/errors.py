"""API error classes.

Every error raised across the service layers derives from APIError so the
exception handlers in main.py can render one consistent envelope.

Two families live here:
- Generic HTTP errors (ValidationError, NotFoundError, ...)
- Onboarding integrity and store errors (RoleConflictError,
  StoreAuthorizationError, ...), raised by repositories and the step
  controller and mapped to the same envelope.
"""


class APIError(Exception):
    """Base class for API errors.

    All API errors have a code, message, and HTTP status.
    Subclasses set default status_code.

    Attributes:
        code: Machine-readable error code (e.g., "NOT_FOUND").
        message: Human-readable error message.
        status_code: HTTP status code to return.
        details: Optional list of additional error details.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: list[dict] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class ValidationError(APIError):
    """Field validation failed (400).

    Use for request body validation errors and rejected step payloads.
    """

    def __init__(
        self,
        message: str,
        details: list[dict] | None = None,
    ) -> None:
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=400,
            details=details,
        )


class UnauthorizedError(APIError):
    """Authentication required (401)."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(
            code="UNAUTHORIZED",
            message=message,
            status_code=401,
        )


class ForbiddenError(APIError):
    """Not allowed to access resource (403).

    Use when auth is valid but the identity lacks permission.
    """

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(
            code="FORBIDDEN",
            message=message,
            status_code=403,
        )


class NotFoundError(APIError):
    """Resource not found (404)."""

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=404,
        )


class ConflictError(APIError):
    """Duplicate or conflicting resource (409).

    Accepts custom code for specific conflict types.
    """

    def __init__(
        self,
        code: str,
        message: str,
        details: list[dict] | None = None,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            status_code=409,
            details=details,
        )


class InvalidStateError(APIError):
    """Business rule violation (422).

    Use when request is syntactically valid but violates business rules,
    e.g. submitting role details before basic info has been saved.
    """

    def __init__(self, message: str) -> None:
        super().__init__(
            code="INVALID_STATE_TRANSITION",
            message=message,
            status_code=422,
        )


class InternalError(APIError):
    """Unexpected server error (500).

    Use for unhandled exceptions. Never expose stack traces to clients.
    """

    def __init__(self, message: str = "An unexpected error occurred") -> None:
        super().__init__(
            code="INTERNAL_ERROR",
            message=message,
            status_code=500,
        )


# =============================================================================
# Onboarding integrity errors
# =============================================================================


class UnknownRoleError(APIError):
    """Role discriminant outside the four supported roles (400).

    Distinct from an empty discriminant, which is an ordinary field error.
    """

    def __init__(self, value: object) -> None:
        self.value = value
        super().__init__(
            code="UNKNOWN_ROLE",
            message=f"Unknown role: '{value}'",
            status_code=400,
            details=[{"field": "role", "error": "UNKNOWN_ROLE"}],
        )


class RoleConflictError(ConflictError):
    """An extension for a different role is already active (409)."""

    def __init__(self, active_role: str, requested_role: str) -> None:
        self.active_role = active_role
        self.requested_role = requested_role
        super().__init__(
            code="ROLE_CONFLICT",
            message=(
                f"A '{active_role}' profile is already active; "
                f"retire it before saving '{requested_role}' details."
            ),
            details=[{"active_role": active_role, "requested_role": requested_role}],
        )


class RoleMismatchError(ConflictError):
    """Base profile role and extension role disagree at commit (409)."""

    def __init__(self, base_role: str | None, extension_role: str) -> None:
        super().__init__(
            code="ROLE_MISMATCH",
            message=(
                f"Base profile role '{base_role}' does not match "
                f"extension role '{extension_role}'."
            ),
        )


class StepOrderError(InvalidStateError):
    """A step was submitted before the steps it depends on (422)."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.code = "INVALID_STEP_ORDER"


# =============================================================================
# Store errors (translated from driver exceptions)
# =============================================================================


class StoreAuthorizationError(ForbiddenError):
    """The store refused the write for the current role (403).

    Raised for row-level security denials and missing privileges. The
    completion coordinator treats this as the trigger for its fallback tiers.
    """

    def __init__(self, message: str = "Store refused the operation") -> None:
        APIError.__init__(
            self,
            code="AUTHORIZATION_FAILURE",
            message=message,
            status_code=403,
        )


class StoreConstraintError(ConflictError):
    """A database constraint rejected the write (409)."""

    def __init__(self, message: str = "Profile data violates a store constraint") -> None:
        super().__init__(code="STORE_CONSTRAINT", message=message)


class StorageUnavailableError(APIError):
    """The store could not be reached (503)."""

    def __init__(self, message: str = "Profile storage is temporarily unavailable") -> None:
        super().__init__(
            code="STORAGE_UNAVAILABLE",
            message=message,
            status_code=503,
        )
