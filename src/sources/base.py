"""
Service Source Base - Abstract interface for where Services come from.

A service source lists the Services the controller should look at and
maintains the finalizer that keeps a Service around until its router rules
are removed.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class ServiceSourceError(Exception):
    """Raised when the source cannot be read or updated."""


class ServiceSource(ABC):
    """Abstract base class for service sources."""

    @abstractmethod
    async def list_services(self) -> List[Dict[str, Any]]:
        """
        List all Services visible to the controller.

        Returns:
            Service documents in Kubernetes API JSON form.

        Raises:
            ServiceSourceError: If the listing failed.
        """
        pass

    @abstractmethod
    async def add_finalizer(
        self,
        service: Dict[str, Any],
        finalizer: str,
        annotations: Optional[Dict[str, str]] = None,
    ) -> None:
        """
        Add ``finalizer`` to a Service's metadata.

        ``annotations`` are set in the same update. The update is skipped
        when the finalizer and every annotation are already in place.

        Raises:
            ServiceSourceError: If the update was rejected.
        """
        pass

    @abstractmethod
    async def remove_finalizer(
        self,
        service: Dict[str, Any],
        finalizer: str,
        annotations: Optional[Dict[str, Optional[str]]] = None,
    ) -> None:
        """
        Remove ``finalizer`` from a Service's metadata.

        ``annotations`` are updated in the same call; a ``None`` value
        removes the annotation.

        Raises:
            ServiceSourceError: If the update was rejected.
        """
        pass

    async def close(self) -> None:
        """Release any connections held by the source."""
        pass
