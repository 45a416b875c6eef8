from __future__ import annotations

from typing import Optional


class RouteflowError(Exception):
    """Base class for router, adapter, registry and engine exceptions.

    Each exception class defines a stable snake-case ``error_code`` and a
    ``recoverable`` flag. Recoverable errors surface as node-level failures
    that the workflow engine may retry; non-recoverable ones go straight to
    the workflow's error-handling strategy, and codes listed in
    ``FATAL_ERROR_CODES`` always fail the execution.
    """

    error_code: str = "internal_error"
    recoverable: bool = False

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        recoverable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if recoverable is not None:
            self.recoverable = recoverable
        self.detail = detail or {}


class ValidationError(RouteflowError):
    """Caller supplied an invalid definition, payload or config."""
    error_code = "validation_error"


class NotFoundError(RouteflowError):
    """Requested resource not found."""
    error_code = "not_found"


class ConflictError(RouteflowError):
    """Operation conflicts with current state."""
    error_code = "conflict"


# Router / adapter layer


class NoAvailableModel(RouteflowError):
    """No catalog entry matches the task and is healthy."""
    error_code = "no_available_model"
    recoverable = True


class AllBackendsExhausted(RouteflowError):
    """Primary model and every fallback failed at the adapter layer."""
    error_code = "all_backends_exhausted"
    recoverable = True


class BudgetExceeded(RouteflowError):
    """Estimated request cost breaks a per-request, daily or monthly limit."""
    error_code = "budget_exceeded"


class AdapterError(RouteflowError):
    """Provider failure translated to a provider-agnostic code."""
    error_code = "provider_error"
    recoverable = True


# Registry


class InvalidAgentConfig(ValidationError):
    """Node config failed its step type's schema."""
    error_code = "invalid_agent_config"


class UnknownAgentType(ValidationError):
    """Step type is not registered."""
    error_code = "unknown_agent_type"


# Workflow engine


class InvalidWorkflowDefinition(ValidationError):
    error_code = "invalid_workflow_definition"


class InvalidWorkflowInput(ValidationError):
    error_code = "invalid_workflow_input"


class ExecutionNotFound(NotFoundError):
    error_code = "execution_not_found"


class InvalidStatusTransition(ConflictError):
    error_code = "invalid_status_transition"


class StateConflict(ConflictError):
    """Sibling nodes wrote the same shared state key."""
    error_code = "state_conflict"


class NodeTimeout(RouteflowError):
    error_code = "node_timeout"
    recoverable = True


class NodeExecutionError(RouteflowError):
    error_code = "node_execution_failed"


class ExecutionCancelled(RouteflowError):
    error_code = "execution_cancelled"


class WorkflowTimeout(RouteflowError):
    """Whole-execution deadline passed."""
    error_code = "workflow_timeout"


# Never retried; always escalate to execution failure.
FATAL_ERROR_CODES = frozenset({
    InvalidAgentConfig.error_code,
    UnknownAgentType.error_code,
    StateConflict.error_code,
    WorkflowTimeout.error_code,
})

RECOVERABLE_PROVIDER_CODES = frozenset({
    "rate_limited",
    "timeout",
    "temporarily_unavailable",
    "network_error",
    "provider_error",
})


__all__ = [
    "RouteflowError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "NoAvailableModel",
    "AllBackendsExhausted",
    "BudgetExceeded",
    "AdapterError",
    "InvalidAgentConfig",
    "UnknownAgentType",
    "InvalidWorkflowDefinition",
    "InvalidWorkflowInput",
    "ExecutionNotFound",
    "InvalidStatusTransition",
    "StateConflict",
    "NodeTimeout",
    "NodeExecutionError",
    "ExecutionCancelled",
    "WorkflowTimeout",
    "FATAL_ERROR_CODES",
    "RECOVERABLE_PROVIDER_CODES",
]
