"""
Typed Exception Hierarchy for the Approval Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the approval engine (API handlers, UIs, batch jobs) must react
differently to "you may not act", "this workflow is already decided" and
"try again".  Parsing message strings for that is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        workflow_service.take_action(request)
    except PermissionDeniedError as e:
        api_response(403, code=e.code, reason=e.reason)
    except InvalidWorkflowStateError as e:
        api_response(409, code=e.code, status=e.status)
    except ConcurrencyConflictError:
        retry_read_modify_write()

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from ApprovalKernelError:

    ApprovalKernelError (base)
    |
    +-- ValidationError
    |   +-- RuleValidationError
    |   +-- InvalidActionError
    |   +-- InvalidDelegationError
    |   +-- UnknownCurrencyError
    |   +-- InvalidAuditEventError
    |   +-- MissingActorError
    |
    +-- NotFoundError
    |   +-- WorkflowNotFoundError
    |   +-- RuleNotFoundError
    |   +-- RoleNotFoundError
    |   +-- DelegationNotFoundError
    |
    +-- ConflictError
    |   +-- WorkflowAlreadyExistsError
    |   +-- ConcurrencyConflictError
    |   +-- DuplicateActionError
    |   +-- RuleInUseError
    |
    +-- PermissionDeniedError
    +-- InvalidWorkflowStateError
    +-- NoApplicableRuleError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- StorageError
        +-- TransientStorageError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | RULE_VALIDATION_FAILED      | Rule draft failed validate_rule()
                | INVALID_ACTION              | Malformed action request
                | INVALID_DELEGATION          | Delegation window/actor checks failed
                | UNKNOWN_CURRENCY            | No exchange rate for invoice currency
                | INVALID_AUDIT_EVENT         | Event kind outside the closed set
                | MISSING_ACTOR               | Audit entry without actor_id
----------------|-----------------------------|-----------------------------------------
Not found       | WORKFLOW_NOT_FOUND          | Unknown workflow id / invoice id
                | RULE_NOT_FOUND              | Unknown rule id
                | ROLE_NOT_FOUND              | Unknown role name
                | DELEGATION_NOT_FOUND        | Unknown delegation id
----------------|-----------------------------|-----------------------------------------
Conflict        | WORKFLOW_ALREADY_EXISTS     | Second workflow for one invoice
                | CONCURRENCY_CONFLICT        | Level moved under the caller
                | DUPLICATE_ACTION            | Same role acted twice at one level
                | RULE_IN_USE                 | Editing a rule referenced by a workflow
----------------|-----------------------------|-----------------------------------------
Permission      | PERMISSION_DENIED           | Role/delegation check failed
State           | INVALID_WORKFLOW_STATE      | Action on a terminal workflow
Rules           | NO_APPLICABLE_RULE          | create_workflow() with no rules
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Any attempt to alter audit history
----------------|-----------------------------|-----------------------------------------
Storage         | TRANSIENT_STORAGE_ERROR     | Backend unavailable (retryable)

===============================================================================
HANDLING PATTERNS
===============================================================================

1. ConflictError -> re-read and retry the read-modify-write.
2. ValidationError / PermissionDeniedError -> report, never retry.
3. TransientStorageError -> retried locally by the audit retry path,
   then surfaced.
4. ImmutabilityViolationError -> fatal to the calling operation.  Log as
   a security event.

Hash mismatches found while READING audit history are not exceptions: they
are reported as ``integrity_valid=False`` on the returned entries.

===============================================================================
"""


class ApprovalKernelError(Exception):
    """
    Base exception for all approval kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "APPROVAL_KERNEL_ERROR"


# Validation-related exceptions


class ValidationError(ApprovalKernelError):
    """Base exception for malformed requests and configuration."""

    code: str = "VALIDATION_ERROR"


class RuleValidationError(ValidationError):
    """An approval rule draft failed validation."""

    code: str = "RULE_VALIDATION_FAILED"

    def __init__(self, rule_name: str, errors: list[str] | tuple[str, ...]):
        self.rule_name = rule_name
        self.errors = tuple(errors)
        super().__init__(
            f"Approval rule '{rule_name}' is invalid: {'; '.join(self.errors)}"
        )


class InvalidActionError(ValidationError):
    """An approval action request is malformed."""

    code: str = "INVALID_ACTION"

    def __init__(self, workflow_id: str, reason: str):
        self.workflow_id = workflow_id
        self.reason = reason
        super().__init__(f"Invalid action on workflow {workflow_id}: {reason}")


class InvalidDelegationError(ValidationError):
    """A delegation request failed validation."""

    code: str = "INVALID_DELEGATION"

    def __init__(self, role: str, to_user_id: str, reason: str):
        self.role = role
        self.to_user_id = to_user_id
        self.reason = reason
        super().__init__(
            f"Invalid delegation of role {role} to {to_user_id}: {reason}"
        )


class UnknownCurrencyError(ValidationError):
    """No exchange rate is configured for the invoice currency."""

    code: str = "UNKNOWN_CURRENCY"

    def __init__(self, currency: str, base_currency: str):
        self.currency = currency
        self.base_currency = base_currency
        super().__init__(
            f"No exchange rate from {currency} to base currency {base_currency}"
        )


class InvalidAuditEventError(ValidationError):
    """Audit event kind is not part of the closed event set."""

    code: str = "INVALID_AUDIT_EVENT"

    def __init__(self, event: str):
        self.event = event
        super().__init__(f"Invalid audit event: {event!r}")


class MissingActorError(ValidationError):
    """Audit entry was submitted without an actor."""

    code: str = "MISSING_ACTOR"

    def __init__(self, event: str):
        self.event = event
        super().__init__(f"Audit entry for event {event} has no actor_id")


# Not-found exceptions


class NotFoundError(ApprovalKernelError):
    """Base exception for unknown workflows, rules and roles."""

    code: str = "NOT_FOUND"


class WorkflowNotFoundError(NotFoundError):
    """Workflow with given ID (or for given invoice) was not found."""

    code: str = "WORKFLOW_NOT_FOUND"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Approval workflow not found: {workflow_id}")


class RuleNotFoundError(NotFoundError):
    """Approval rule with given ID was not found."""

    code: str = "RULE_NOT_FOUND"

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Approval rule not found: {rule_id}")


class RoleNotFoundError(NotFoundError):
    """Approval role with given name was not found."""

    code: str = "ROLE_NOT_FOUND"

    def __init__(self, role: str):
        self.role = role
        super().__init__(f"Approval role not found: {role}")


class DelegationNotFoundError(NotFoundError):
    """Approval delegation with given ID was not found."""

    code: str = "DELEGATION_NOT_FOUND"

    def __init__(self, delegation_id: str):
        self.delegation_id = delegation_id
        super().__init__(f"Approval delegation not found: {delegation_id}")


# Conflict exceptions


class ConflictError(ApprovalKernelError):
    """Base exception for conflicts; callers should re-read and retry."""

    code: str = "CONFLICT"


class WorkflowAlreadyExistsError(ConflictError):
    """A workflow already exists for the invoice."""

    code: str = "WORKFLOW_ALREADY_EXISTS"

    def __init__(self, invoice_id: str, status: str | None = None):
        self.invoice_id = invoice_id
        self.status = status
        super().__init__(f"Approval workflow already exists for invoice {invoice_id}")


class ConcurrencyConflictError(ConflictError):
    """The workflow changed between the caller's read and write."""

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(
        self,
        workflow_id: str,
        expected_level: int | None = None,
        actual_level: int | None = None,
    ):
        self.workflow_id = workflow_id
        self.expected_level = expected_level
        self.actual_level = actual_level
        if expected_level is not None:
            detail = f"expected level {expected_level}, found {actual_level}"
        else:
            detail = "workflow was modified by another transaction"
        super().__init__(f"Concurrency conflict on workflow {workflow_id}: {detail}")


class DuplicateActionError(ConflictError):
    """The same role already acted at this level."""

    code: str = "DUPLICATE_ACTION"

    def __init__(self, workflow_id: str, level: int, role: str):
        self.workflow_id = workflow_id
        self.level = level
        self.role = role
        super().__init__(
            f"Role {role} already acted on workflow {workflow_id} at level {level}"
        )


class RuleInUseError(ConflictError):
    """Rule is referenced by a workflow and can no longer be edited."""

    code: str = "RULE_IN_USE"

    def __init__(self, rule_id: str, workflow_count: int):
        self.rule_id = rule_id
        self.workflow_count = workflow_count
        super().__init__(
            f"Approval rule {rule_id} is referenced by {workflow_count} "
            "workflow(s) and cannot be modified"
        )


# Authorization and state


class PermissionDeniedError(ApprovalKernelError):
    """Principal does not hold the role directly or through a delegation."""

    code: str = "PERMISSION_DENIED"

    def __init__(self, user_id: str, role: str, reason: str):
        self.user_id = user_id
        self.role = role
        self.reason = reason
        super().__init__(f"User {user_id} may not act as {role}: {reason}")


class InvalidWorkflowStateError(ApprovalKernelError):
    """Workflow is already decided; no further actions are accepted."""

    code: str = "INVALID_WORKFLOW_STATE"

    def __init__(self, workflow_id: str, status: str):
        self.workflow_id = workflow_id
        self.status = status
        super().__init__(
            f"Workflow {workflow_id} is {status}; no further actions accepted"
        )


class NoApplicableRuleError(ApprovalKernelError):
    """No approval rule matched the invoice."""

    code: str = "NO_APPLICABLE_RULE"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"No applicable approval rule for invoice {invoice_id}")


# Immutability-related exceptions


class ImmutabilityError(ApprovalKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Audit log entries and approval actions are immutable after creation.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Storage


class StorageError(ApprovalKernelError):
    """Base exception for persistence failures."""

    code: str = "STORAGE_ERROR"


class TransientStorageError(StorageError):
    """Backend unavailable; the write may succeed if retried."""

    code: str = "TRANSIENT_STORAGE_ERROR"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Transient storage failure during {operation}: {detail}")
