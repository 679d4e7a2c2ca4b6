"""The interface shared by every long-running component of the node."""

from __future__ import annotations

import abc
from types import TracebackType


class Service(abc.ABC):
    """A component that can be started, closed and restarted."""

    @abc.abstractmethod
    def start(self) -> None:
        """Start the service; raise if it cannot be started."""

    @abc.abstractmethod
    def close(self) -> None:
        """Stop the service and release what it holds."""

    def restart(self) -> None:
        """Close the service and start it again."""
        self.close()
        self.start()

    def __enter__(self) -> "Service":
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()