"""
Error taxonomy for editing and execution.

CommandError is raised by the editor before anything is mutated.
ExecutionError subclasses abort a run; the executor attaches the partial
trace to them before handing them back in the ExecutionResult.
"""

import asyncio
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from flowgraph.graph.executor import NodeTrace
    from flowgraph.graph.validator import ValidationResult


class CommandErrorKind(StrEnum):
    NOT_FOUND = "not_found"
    INVALID_TYPE = "invalid_type"
    INVALID_PAYLOAD = "invalid_payload"


class CommandError(Exception):
    """A rejected editor command. The graph is left untouched."""

    def __init__(self, kind: CommandErrorKind, message: str, target_id: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.target_id = target_id

    @classmethod
    def not_found(cls, what: str, target_id: str) -> "CommandError":
        return cls(CommandErrorKind.NOT_FOUND, f"{what} not found: {target_id}", target_id)

    @classmethod
    def invalid_type(cls, node_type: str) -> "CommandError":
        return cls(CommandErrorKind.INVALID_TYPE, f"Unknown node type: {node_type}")

    @classmethod
    def invalid_payload(cls, message: str, target_id: str | None = None) -> "CommandError":
        return cls(CommandErrorKind.INVALID_PAYLOAD, message, target_id)


class ExecutionErrorKind(StrEnum):
    NO_START_NODE = "no_start_node"
    AMBIGUOUS_START_NODE = "ambiguous_start_node"
    INVALID_WORKFLOW = "invalid_workflow"
    UNKNOWN_NODE_TYPE = "unknown_node_type"
    MAX_TOOL_ITERATIONS_EXCEEDED = "max_tool_iterations_exceeded"
    MAX_STEPS_EXCEEDED = "max_steps_exceeded"
    HITL_TIMEOUT = "hitl_timeout"
    MODALITY_UNSUPPORTED = "modality_unsupported"
    PROVIDER_ERROR = "provider_error"
    NODE_FAILED = "node_failed"
    CANCELLED = "cancelled"


class ExecutionError(Exception):
    """Base class for errors that abort a workflow run."""

    kind: ExecutionErrorKind = ExecutionErrorKind.NODE_FAILED
    transient: bool = False

    def __init__(self, message: str, node_id: str | None = None):
        super().__init__(message)
        self.node_id = node_id
        self.trace: list["NodeTrace"] = []

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": str(self), "node_id": self.node_id}


class NoStartNodeError(ExecutionError):
    kind = ExecutionErrorKind.NO_START_NODE

    def __init__(self) -> None:
        super().__init__("Workflow has no start node")


class AmbiguousStartNodeError(ExecutionError):
    kind = ExecutionErrorKind.AMBIGUOUS_START_NODE

    def __init__(self, start_ids: list[str]):
        super().__init__(f"Workflow has {len(start_ids)} start nodes: {', '.join(start_ids)}")
        self.start_ids = start_ids


class InvalidWorkflowError(ExecutionError):
    kind = ExecutionErrorKind.INVALID_WORKFLOW

    def __init__(self, validation: "ValidationResult"):
        messages = "; ".join(issue.message for issue in validation.errors)
        super().__init__(f"Workflow failed validation: {messages}")
        self.validation = validation


class UnknownNodeTypeError(ExecutionError):
    kind = ExecutionErrorKind.UNKNOWN_NODE_TYPE

    def __init__(self, node_type: str, node_id: str | None = None):
        super().__init__(f"No extension registered for node type '{node_type}'", node_id)
        self.node_type = node_type


class MaxToolIterationsExceededError(ExecutionError):
    kind = ExecutionErrorKind.MAX_TOOL_ITERATIONS_EXCEEDED

    def __init__(self, max_iterations: int, node_id: str | None = None):
        super().__init__(f"Tool loop exceeded {max_iterations} iterations", node_id)
        self.max_iterations = max_iterations


class MaxStepsExceededError(ExecutionError):
    kind = ExecutionErrorKind.MAX_STEPS_EXCEEDED

    def __init__(self, max_steps: int, node_id: str | None = None):
        super().__init__(f"Run exceeded {max_steps} node dispatches", node_id)


class HITLTimeoutError(ExecutionError):
    kind = ExecutionErrorKind.HITL_TIMEOUT

    def __init__(self, timeout: float, node_id: str | None = None):
        super().__init__(f"Human review timed out after {timeout}s", node_id)
        self.timeout = timeout


class ModalityUnsupportedError(ExecutionError):
    kind = ExecutionErrorKind.MODALITY_UNSUPPORTED

    def __init__(self, model: str, modality: str, node_id: str | None = None):
        super().__init__(f"Model '{model}' does not accept {modality} input", node_id)
        self.model = model
        self.modality = modality


class ProviderError(ExecutionError):
    """A failed provider or tool call; ``transient`` failures are retried."""

    kind = ExecutionErrorKind.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        transient: bool = False,
        status_code: int | None = None,
        node_id: str | None = None,
    ):
        super().__init__(message, node_id)
        self.transient = transient
        self.status_code = status_code


class NodeExecutionError(ExecutionError):
    """A handler raised something that is not an ExecutionError."""

    kind = ExecutionErrorKind.NODE_FAILED


class ExecutionCancelledError(ExecutionError):
    kind = ExecutionErrorKind.CANCELLED

    def __init__(self, node_id: str | None = None):
        super().__init__("Workflow cancelled", node_id)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class ErrorCode(StrEnum):
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK = "network"
    AUTH = "auth"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


TRANSIENT_CODES = frozenset({ErrorCode.RATE_LIMIT, ErrorCode.TIMEOUT, ErrorCode.NETWORK})


def classify_status(status_code: int) -> ErrorCode:
    if status_code == 429:
        return ErrorCode.RATE_LIMIT
    if status_code in (401, 403):
        return ErrorCode.AUTH
    if status_code in (408, 504):
        return ErrorCode.TIMEOUT
    if status_code in (400, 404, 422):
        return ErrorCode.VALIDATION
    if status_code >= 500:
        return ErrorCode.NETWORK
    return ErrorCode.UNKNOWN


def classify_error(exc: BaseException) -> ErrorCode:
    """Map an exception onto an ErrorCode using its type, status and message."""
    if isinstance(exc, ProviderError):
        if exc.status_code is not None:
            return classify_status(exc.status_code)
        return ErrorCode.NETWORK if exc.transient else ErrorCode.UNKNOWN
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return ErrorCode.TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)
    if isinstance(exc, (ConnectionError, httpx.TransportError)):
        return ErrorCode.NETWORK
    if isinstance(exc, (ValueError, TypeError)):
        return ErrorCode.VALIDATION

    message = str(exc).lower()
    if "rate limit" in message or "429" in message or "too many requests" in message:
        return ErrorCode.RATE_LIMIT
    if "401" in message or "403" in message or "api key" in message or "unauthorized" in message:
        return ErrorCode.AUTH
    if "timeout" in message or "timed out" in message:
        return ErrorCode.TIMEOUT
    if "network" in message or "connection" in message or "econnreset" in message:
        return ErrorCode.NETWORK
    if "invalid" in message or "validation" in message:
        return ErrorCode.VALIDATION
    return ErrorCode.UNKNOWN


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, ExecutionError):
        return exc.transient
    return classify_error(exc) in TRANSIENT_CODES
