"""Tool-calling conversation loop and its supporting pieces."""

from .budget_manager import BudgetManager, ModelHandle
from .cancellation import CancellationToken
from .conversation import ConversationStore
from .errors import (
    ErrorCode,
    FatalErrorClassifier,
    FatalModelError,
    FatalPattern,
    OperationCancelledError,
    ParleyError,
    ServiceUnavailableError,
    TransientModelError,
)
from .runner import (
    MAX_ITERATIONS_MESSAGE,
    NO_CONTENT_MESSAGE,
    ConversationObserver,
    ConversationRunner,
    ModelClient,
    ToolDispatcher,
)
from .types import (
    BudgetAction,
    ContextCleanupResult,
    Message,
    RunnerConfig,
    TokenValidationResult,
    ToolCall,
    ToolCallRequest,
    ToolCallResponse,
    ToolExecutionRequest,
    ToolExecutionResult,
)

__all__ = [
    # Runner
    "ConversationRunner",
    "ConversationObserver",
    "ModelClient",
    "ToolDispatcher",
    "RunnerConfig",
    "NO_CONTENT_MESSAGE",
    "MAX_ITERATIONS_MESSAGE",
    # History
    "ConversationStore",
    "Message",
    "ToolCall",
    "ToolCallRequest",
    "ToolCallResponse",
    "ToolExecutionRequest",
    "ToolExecutionResult",
    # Budget
    "BudgetManager",
    "ModelHandle",
    "BudgetAction",
    "TokenValidationResult",
    "ContextCleanupResult",
    # Cancellation and errors
    "CancellationToken",
    "ErrorCode",
    "ParleyError",
    "OperationCancelledError",
    "FatalModelError",
    "FatalPattern",
    "FatalErrorClassifier",
    "ServiceUnavailableError",
    "TransientModelError",
]
