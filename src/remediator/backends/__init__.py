from remediator.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    ChatMessage,
    ModelBackend,
    ModelReply,
    ToolCallRequest,
)
from remediator.backends.claude import ClaudeCodeBackend
from remediator.backends.openai_chat import OpenAIChatBackend
from remediator.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ChatMessage",
    "ClaudeCodeBackend",
    "ModelBackend",
    "ModelReply",
    "OpenAIChatBackend",
    "ResilientBackend",
    "RetryPolicy",
    "ToolCallRequest",
]
