"""durastep: Durable replay-based workflows invoked over HTTP."""

from .client import WorkflowClient
from .config import DurastepConfig, load_config
from .context import WorkflowContext
from .contracts import CallResult, GatewayRequest, GatewayResponse, InvocationMessage
from .exceptions import (
    AuthError,
    DeterminismViolationError,
    DuplicateStepError,
    RunNotFoundError,
    StepExecutionError,
    TransportError,
    WorkflowEngineError,
)
from .gateway import InvocationGateway, serve
from .persistence import get_repository
from .transports import get_transport
from .worker import ContinuationWorker

__version__ = "0.1.0"
__all__ = [
    "AuthError",
    "CallResult",
    "ContinuationWorker",
    "DeterminismViolationError",
    "DuplicateStepError",
    "DurastepConfig",
    "GatewayRequest",
    "GatewayResponse",
    "InvocationGateway",
    "InvocationMessage",
    "RunNotFoundError",
    "StepExecutionError",
    "TransportError",
    "WorkflowClient",
    "WorkflowContext",
    "WorkflowEngineError",
    "get_repository",
    "get_transport",
    "load_config",
    "serve",
]
