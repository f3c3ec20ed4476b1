"""
Peer Protocol Capability

The Mochimo wire protocol is supplied by an external library. The scanner
only needs the two calls below; an adapter for the real library is loaded at
startup from a "module:attribute" path (PEER_PROTOCOL).

request_peer_list() returns a mapping with any of:
    status        "ok" | "timeout" | "bad" | "unreachable"
    chain_height  int
    chain_hash    hex str
    chain_weight  hex str (arbitrary precision)
    peers         iterable of IPv4 strings
Unknown keys are ignored by the scanner.
"""

import importlib
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional


class PeerProtocolError(RuntimeError):
    """A peer request failed (connect error, timeout, malformed reply)."""

    def __init__(self, ip: str, message: str):
        super().__init__(f"{ip}: {message}")
        self.ip = ip


class PeerProtocol(ABC):
    """Capabilities consumed from the external node-protocol library."""

    @abstractmethod
    async def request_peer_list(self, ip: str) -> Mapping[str, Any]:
        """Chain tip and advertised peers of one node."""

    @abstractmethod
    async def request_balance(self, ip: str, address: str) -> Optional[int]:
        """Balance of `address` as reported by one node, None if unknown."""

    async def close(self) -> None:
        """Release any sockets or sessions held by the adapter."""


def load_protocol(path: str, **kwargs) -> PeerProtocol:
    """
    Instantiate a PeerProtocol from "package.module:ClassOrFactory".

    Raises:
        ValueError: malformed path or the object is not a PeerProtocol
        ImportError: module cannot be imported
    """
    module_name, sep, attr = path.partition(':')
    if not sep or not module_name or not attr:
        raise ValueError(f"Protocol path must look like 'module:attribute', got {path!r}")
    module = importlib.import_module(module_name)
    try:
        factory = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"{module_name} has no attribute {attr!r}")
    protocol = factory(**kwargs)
    if not isinstance(protocol, PeerProtocol):
        raise ValueError(f"{path} did not produce a PeerProtocol")
    return protocol
