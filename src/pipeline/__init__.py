from .context import Rejection, RequestContext
from .core import Gateway, Pipeline

__all__ = [
    "Gateway",
    "Pipeline",
    "Rejection",
    "RequestContext",
]
