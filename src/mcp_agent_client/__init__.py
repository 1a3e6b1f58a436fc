from .completions import CompletionBackend, CompletionClient
from .config import ClientSettings
from .dispatcher import ToolDispatcher
from .elicitation import ElicitationForm, ElicitationRequest, FormField
from .errors import (
    CompletionAuthError,
    CompletionError,
    McpAuthRequiredError,
    McpClientError,
    McpProtocolError,
    McpSessionError,
    McpTimeoutError,
    McpTransportError,
    OAuthError,
    UrlElicitationRequiredError,
)
from .events import (
    AgenticEvent,
    AuthRequired,
    ContentUpdated,
    ConversationComplete,
    ElicitationRequested,
    ErrorOccurred,
    GenericNotification,
    IterationStarted,
    MaxIterationsReached,
    MessagePersisted,
    ProgressReported,
    ReasoningUpdated,
    SamplingRequested,
    ServerNeedsAuth,
    ToolCompleted,
    ToolsChanged,
    ToolStarted,
)
from .loop import AgenticLoop
from .manager import ServerManager
from .models import (
    InitializeResult,
    McpTool,
    McpToolResult,
    Message,
    ModelInfo,
    ServerConfig,
    ToolCallRequest,
    ToolCallResult,
)
from .oauth import OAuthClient, OAuthCredentialProvider, OAuthTokens
from .proxy import InteractionProxy, SamplingProcessor
from .session import McpSession
from .store import ConversationStore, InMemoryConversationStore
from .stream import StreamAccumulator, parse_completion_stream
from .timeouts import TimeoutCoordinator
from .transport import HttpTransport, Transport

__all__ = [
    "AgenticEvent",
    "AgenticLoop",
    "AuthRequired",
    "ClientSettings",
    "CompletionAuthError",
    "CompletionBackend",
    "CompletionClient",
    "CompletionError",
    "ContentUpdated",
    "ConversationComplete",
    "ConversationStore",
    "ElicitationForm",
    "ElicitationRequest",
    "ElicitationRequested",
    "ErrorOccurred",
    "FormField",
    "GenericNotification",
    "HttpTransport",
    "InMemoryConversationStore",
    "InitializeResult",
    "InteractionProxy",
    "IterationStarted",
    "MaxIterationsReached",
    "McpAuthRequiredError",
    "McpClientError",
    "McpProtocolError",
    "McpSession",
    "McpSessionError",
    "McpTimeoutError",
    "McpTool",
    "McpToolResult",
    "McpTransportError",
    "Message",
    "MessagePersisted",
    "ModelInfo",
    "OAuthClient",
    "OAuthCredentialProvider",
    "OAuthError",
    "OAuthTokens",
    "ProgressReported",
    "ReasoningUpdated",
    "SamplingProcessor",
    "SamplingRequested",
    "ServerConfig",
    "ServerManager",
    "ServerNeedsAuth",
    "StreamAccumulator",
    "TimeoutCoordinator",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolCompleted",
    "ToolDispatcher",
    "ToolStarted",
    "ToolsChanged",
    "Transport",
    "UrlElicitationRequiredError",
    "parse_completion_stream",
]
