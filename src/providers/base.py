from abc import ABC, abstractmethod
from typing import Any, Dict


class GenerationProvider(ABC):
    """Abstract base class for upstream generation APIs.

    Implementations forward the caller's request body untouched and return the
    decoded upstream JSON. Non-success responses are raised, not returned.
    """

    @abstractmethod
    async def generate(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Send ``body`` upstream and return the JSON response."""

    async def aclose(self) -> None:
        """Release any pooled connections."""
