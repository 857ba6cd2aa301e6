"""Workflow graphs: data model, editing commands, validation and execution."""

from flowgraph.graph.commands import WorkflowEditor
from flowgraph.graph.conversation import (
    ApproximateTokenCounter,
    CompactionConfig,
    CompactionStrategy,
    Conversation,
    Message,
    TokenCounter,
)
from flowgraph.graph.errors import (
    AmbiguousStartNodeError,
    CommandError,
    CommandErrorKind,
    ErrorCode,
    ExecutionCancelledError,
    ExecutionError,
    ExecutionErrorKind,
    HITLTimeoutError,
    InvalidWorkflowError,
    MaxStepsExceededError,
    MaxToolIterationsExceededError,
    ModalityUnsupportedError,
    NodeExecutionError,
    NoStartNodeError,
    ProviderError,
    UnknownNodeTypeError,
    classify_error,
)
from flowgraph.graph.events import EditorEvent, EditorEvents, EditorEventType
from flowgraph.graph.executor import (
    Attachment,
    ExecutionCallbacks,
    ExecutionOptions,
    ExecutionResult,
    ExecutionState,
    NodeTrace,
    WorkflowExecutor,
)
from flowgraph.graph.extension import (
    ExtensionRegistry,
    HandleSpec,
    NodeContext,
    NodeExtension,
    NodeResult,
)
from flowgraph.graph.history import HistoryManager
from flowgraph.graph.hitl import HITLAction, HITLConfig, HITLMode, HITLRequest, HITLResponse
from flowgraph.graph.models import (
    ErrorHandlingConfig,
    ErrorMode,
    NodeData,
    Position,
    RetryConfig,
    WorkflowEdge,
    WorkflowMeta,
    WorkflowNode,
    WorkflowSnapshot,
)
from flowgraph.graph.services import NodeServices
from flowgraph.graph.subflow import SubflowDefinition, SubflowRegistry
from flowgraph.graph.validator import (
    IssueCode,
    Severity,
    ValidationIssue,
    ValidationResult,
    validate_workflow,
)

__all__ = [
    # Data model
    "Position",
    "WorkflowNode",
    "WorkflowEdge",
    "WorkflowMeta",
    "WorkflowSnapshot",
    "NodeData",
    "ErrorMode",
    "ErrorHandlingConfig",
    "RetryConfig",
    # Editing
    "WorkflowEditor",
    "HistoryManager",
    "EditorEvents",
    "EditorEvent",
    "EditorEventType",
    # Validation
    "validate_workflow",
    "ValidationResult",
    "ValidationIssue",
    "IssueCode",
    "Severity",
    # Extensions
    "ExtensionRegistry",
    "NodeExtension",
    "NodeContext",
    "NodeResult",
    "NodeServices",
    "HandleSpec",
    # Execution
    "WorkflowExecutor",
    "ExecutionOptions",
    "ExecutionCallbacks",
    "ExecutionResult",
    "ExecutionState",
    "NodeTrace",
    "Attachment",
    "Conversation",
    "Message",
    "CompactionConfig",
    "CompactionStrategy",
    "TokenCounter",
    "ApproximateTokenCounter",
    "SubflowDefinition",
    "SubflowRegistry",
    # HITL
    "HITLAction",
    "HITLConfig",
    "HITLMode",
    "HITLRequest",
    "HITLResponse",
    # Errors
    "CommandError",
    "CommandErrorKind",
    "ExecutionError",
    "ExecutionErrorKind",
    "NoStartNodeError",
    "AmbiguousStartNodeError",
    "InvalidWorkflowError",
    "UnknownNodeTypeError",
    "MaxToolIterationsExceededError",
    "MaxStepsExceededError",
    "HITLTimeoutError",
    "ModalityUnsupportedError",
    "ProviderError",
    "NodeExecutionError",
    "ExecutionCancelledError",
    "ErrorCode",
    "classify_error",
]
