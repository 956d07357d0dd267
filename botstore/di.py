"""
Dependency Injection Container for botstore

The controller is a single instance per process, but it is never a module
global: the application builds a container once at startup and consumers
ask it for the ``controller`` service. ``shutdown()`` closes whatever the
container created, newest first.
"""

import logging
import threading
from typing import Dict, Any, Callable, List, Optional, Type, TypeVar

from botstore.config import StoreConfig, load_config
from botstore.database.controller import DatabaseController
from botstore.database.driver import QueryDriver

T = TypeVar('T')

logger = logging.getLogger(__name__)


class DIContainer:
    """
    Registry of named services and lazily invoked factories.

    A factory runs at most once, even when several threads ask for the
    service at the same time; its result is cached.
    """

    def __init__(self):
        self._services: Dict[str, Any] = {}
        self._factories: Dict[str, Callable[["DIContainer"], Any]] = {}
        self._created: List[str] = []
        self._lock = threading.RLock()

    def register(self, name: str, instance: Any) -> None:
        with self._lock:
            self._services[name] = instance

    def register_factory(self, name: str, factory: Callable[["DIContainer"], Any]) -> None:
        """
        Args:
            name: Service name
            factory: Called with the container the first time ``name`` is requested
        """
        with self._lock:
            self._factories[name] = factory
            self._services.pop(name, None)

    def has(self, name: str) -> bool:
        return name in self._services or name in self._factories

    def get(self, name: str) -> Any:
        """
        Raises:
            KeyError: If the name is not registered
        """
        with self._lock:
            if name in self._services:
                return self._services[name]
            if name not in self._factories:
                raise KeyError(f"No service or factory registered for '{name}'")
            instance = self._factories[name](self)
            self._services[name] = instance
            self._created.append(name)
            return instance

    def get_or_default(self, name: str, default: Any = None) -> Any:
        try:
            return self.get(name)
        except KeyError:
            return default

    def get_typed(self, name: str, cls: Type[T]) -> T:
        """
        Raises:
            KeyError: If the name is not registered
            TypeError: If the instance is not of the expected type
        """
        instance = self.get(name)
        if not isinstance(instance, cls):
            raise TypeError(f"Service '{name}' is not of type {cls.__name__}")
        return instance

    def shutdown(self) -> None:
        """Close factory-built services that have a ``close()``, in reverse creation order."""
        with self._lock:
            while self._created:
                name = self._created.pop()
                instance = self._services.pop(name, None)
                close = getattr(instance, "close", None)
                if callable(close):
                    logger.debug(f"Closing service '{name}'")
                    close()


def build_container(
    config: Optional[StoreConfig] = None,
    initialize: bool = False,
    driver_factory: Callable[..., QueryDriver] = QueryDriver,
) -> DIContainer:
    """
    Create a container holding ``config`` and a lazily built ``controller``.

    Args:
        config: Store configuration; loaded from the environment when omitted
        initialize: Run the controller startup sequence when it is first requested
        driver_factory: Builds the QueryDriver instances the controller uses
    """
    container = DIContainer()
    container.register("config", config or load_config())

    def controller_factory(c: DIContainer) -> DatabaseController:
        controller = DatabaseController(c.get_typed("config", StoreConfig), driver_factory=driver_factory)
        if initialize:
            controller.initialize()
        return controller

    container.register_factory("controller", controller_factory)
    return container
