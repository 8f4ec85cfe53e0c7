"""Connection handle abstraction.

A handle stands for one participant's live transport channel. The relay core
only ever calls ``send``, which must enqueue and return immediately; the
transport layer owns the channel and decides when the handle dies.
"""

import abc
import itertools
from typing import Any, Dict

_handle_ids = itertools.count(1)


class ConnectionHandle(abc.ABC):
    """Base class for an addressable participant endpoint.

    Subclasses implement ``send``. Handles compare by identity, so the same
    object must be used for the whole lifetime of a connection.

    Attributes:
        handle_id: Process-unique number used in log messages.
        remote: Free-form description of the remote end (address, etc).
    """

    def __init__(self, remote: str = ""):
        self.handle_id = next(_handle_ids)
        self.remote = remote

    @abc.abstractmethod
    def send(self, message: Dict[str, Any]) -> None:
        """Enqueue a message for delivery without blocking.

        Raises:
            HandleClosed: If the underlying channel is already closed.
        """

    def __repr__(self) -> str:
        if self.remote:
            return f"<{type(self).__name__} #{self.handle_id} {self.remote}>"
        return f"<{type(self).__name__} #{self.handle_id}>"
