"""
Base store interface for botstore.

Both the relational backend and the flat-file backend implement this
interface so the controller can expose one accessor surface.
"""

import abc
import logging
from typing import Dict, Any, List, Optional, Sequence, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

RELATIONAL = "postgresql"
FALLBACK = "fallback"


class Store(abc.ABC):
    """
    Abstract base class for snapshot stores.

    A store owns an in-memory snapshot (collection name -> key -> record)
    that ``read`` repopulates and ``write`` persists in full.
    """

    mode: str = ""

    def __init__(self):
        self.data: Dict[str, Any] = {}
        self.is_initialized = False

    @abc.abstractmethod
    def initialize(self, cancel_token=None) -> Dict[str, Any]:
        """
        Prepare the backend and load the snapshot.

        Args:
            cancel_token: Optional CancellationToken checked between steps

        Returns:
            Dict[str, Any]: the loaded snapshot
        """
        pass

    @abc.abstractmethod
    def read(self) -> Dict[str, Any]:
        """
        Reload the snapshot from the backend.

        Returns:
            Dict[str, Any]: the reloaded snapshot
        """
        pass

    @abc.abstractmethod
    def write(self) -> Dict[str, Any]:
        """
        Persist the whole in-memory snapshot.

        Returns:
            Dict[str, Any]: the snapshot that was written
        """
        pass

    @abc.abstractmethod
    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        pass

    @abc.abstractmethod
    def transaction(self, callback: Callable[[Any], T]) -> T:
        pass

    @abc.abstractmethod
    def health_check(self) -> Dict[str, Any]:
        pass

    @abc.abstractmethod
    def connection_status(self) -> Dict[str, Any]:
        pass

    @abc.abstractmethod
    def close(self) -> None:
        pass
