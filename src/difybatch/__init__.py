from .aggregator import Aggregator as Aggregator
from .client import DifyClient as DifyClient
from .config import RuntimeConfig as RuntimeConfig
from .events import ErrorEvent as ErrorEvent
from .events import EventDispatcher as EventDispatcher
from .events import ReplyEvent as ReplyEvent
from .queue import DispatchQueue as DispatchQueue
from .retry import RetryCoordinator as RetryCoordinator
from .service import ChatService as ChatService
from .worker import BatchWorker as BatchWorker

__all__ = [
    "Aggregator",
    "BatchWorker",
    "ChatService",
    "DifyClient",
    "DispatchQueue",
    "ErrorEvent",
    "EventDispatcher",
    "ReplyEvent",
    "RetryCoordinator",
    "RuntimeConfig",
]
