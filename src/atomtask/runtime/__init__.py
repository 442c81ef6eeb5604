"""Runtime primitives the orchestrator is built on."""

from .cancel import CancelToken
from .events import EventEmitter
from .limiter import ConcurrencyLimiter
from .retry import Abandon, retry

__all__ = ["Abandon", "CancelToken", "ConcurrencyLimiter", "EventEmitter", "retry"]
