"""
Transport control channel contract.

The lifecycle controller only talks to these protocols; any provider
implementing them can be substituted (the stem-backed TorControlProvider,
or an in-memory fake in tests).
"""
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

from config import SERVICE_PORT


@dataclass(frozen=True)
class ListenerConfig:
    """Parameters of one published listener."""

    use_supplied_key: bool = False
    key_type: Optional[str] = None
    key_content: Optional[str] = None
    await_propagation: bool = True
    retain_key: bool = False
    port: int = SERVICE_PORT

    def __repr__(self):
        return (f"ListenerConfig(use_supplied_key={self.use_supplied_key}, "
                f"await_propagation={self.await_propagation}, "
                f"retain_key={self.retain_key}, port={self.port})")


@runtime_checkable
class Listener(Protocol):
    """A published endpoint, backed by a local listening socket."""

    def bound_address(self) -> str:
        """Published ``host:port``."""
        ...

    def fileno(self) -> int:
        """File descriptor of the local listening socket to serve on."""
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class ControlConnection(Protocol):
    """An open control channel."""

    def authenticate(self, credential: str) -> None:
        ...

    def create_listener(self, config: ListenerConfig) -> Listener:
        ...

    def next_event(self) -> Any:
        """
        Block until the next asynchronous notification.

        Raises:
            ControlChannelClosed: the transport went away
        """
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class ControlProvider(Protocol):
    """Factory for control connections."""

    def connect(self, endpoint: str, debug: bool = False) -> ControlConnection:
        ...
