"""Protocol definitions for Siren.

These protocols describe the seams between the orchestration layer and its
collaborators, so that the watch coordinator does not depend on the concrete
dev server and tests can substitute light fakes.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Protocol, runtime_checkable


@runtime_checkable
class ReloadNotifier(Protocol):
    """Receives "served content changed" signals from the watch coordinator."""

    @abstractmethod
    def notify_reload(self) -> None:
        """Ask connected browsers to reload.

        Must return immediately; delivery happens in the background.
        """
        ...


@runtime_checkable
class StaticServer(Protocol):
    """Serves the output tree and relays reload notifications."""

    @abstractmethod
    def start(self) -> None:
        """Bind the listeners and return without blocking."""
        ...

    @abstractmethod
    def stop(self) -> None:
        """Shut the listeners down."""
        ...

    @abstractmethod
    def notify_reload(self) -> None:
        """Ask connected browsers to reload."""
        ...
