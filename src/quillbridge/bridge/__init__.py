"""Streaming bridge between chat history and the external conversational CLI."""

from .errors import InvalidTransitionError, ProcessLaunchError, QuillbridgeError
from .pipeline import ProcessHandle, StreamingPipeline, generate_token
from .records import FINISHED_STATUS, RequestInfo, RequestRecord, RequestState, describe_exit
from .renderer import ResponseRenderer
from .serializer import PromptArguments, PromptBundle, build_arguments, parse_messages

__all__ = [
    "FINISHED_STATUS",
    "InvalidTransitionError",
    "ProcessHandle",
    "ProcessLaunchError",
    "PromptArguments",
    "PromptBundle",
    "QuillbridgeError",
    "RequestInfo",
    "RequestRecord",
    "RequestState",
    "ResponseRenderer",
    "StreamingPipeline",
    "build_arguments",
    "describe_exit",
    "generate_token",
    "parse_messages",
]
