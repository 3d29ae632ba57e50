"""
Proxy introspection from raw storage.

A transparent proxy's admin functions revert for anyone but the admin, so the
only caller-independent way to learn what a proxy is and where it points is to
read the ERC-1967 slots directly:

    implementation = keccak256("eip1967.proxy.implementation") - 1
    admin          = keccak256("eip1967.proxy.admin") - 1
    beacon         = keccak256("eip1967.proxy.beacon") - 1

Classification precedence: beacon → admin → implementation.
"""

from __future__ import annotations

import logging
from enum import Enum

from .abi import ZERO_ADDRESS, keccak256, normalize_address
from .chain import Chain
from .errors import UnrecognizedProxyError

log = logging.getLogger(__name__)


def _eip1967_slot(label: str) -> int:
    return int.from_bytes(keccak256(label.encode("ascii")), "big") - 1


IMPLEMENTATION_SLOT = _eip1967_slot("eip1967.proxy.implementation")
ADMIN_SLOT = _eip1967_slot("eip1967.proxy.admin")
BEACON_SLOT = _eip1967_slot("eip1967.proxy.beacon")


class ProxyKind(str, Enum):
    TRANSPARENT = "transparent"
    UUPS = "uups"
    BEACON = "beacon"


def slot_to_address(word: bytes) -> str:
    """The address held in a 32-byte storage word (its low 20 bytes)."""
    raw = bytes(word).rjust(32, b"\x00")[-32:]
    return normalize_address(raw[12:])


class ProxyIntrospector:
    def __init__(self, chain: Chain) -> None:
        self._chain = chain

    def _read(self, address: str, slot: int) -> str:
        return slot_to_address(self._chain.get_storage_at(normalize_address(address), slot))

    def read_implementation_slot(self, address: str) -> str:
        return self._read(address, IMPLEMENTATION_SLOT)

    def read_admin_slot(self, address: str) -> str:
        return self._read(address, ADMIN_SLOT)

    def read_beacon_slot(self, address: str) -> str:
        return self._read(address, BEACON_SLOT)

    def classify(self, address: str) -> ProxyKind:
        if self.read_beacon_slot(address) != ZERO_ADDRESS:
            kind = ProxyKind.BEACON
        elif self.read_admin_slot(address) != ZERO_ADDRESS:
            kind = ProxyKind.TRANSPARENT
        elif self.read_implementation_slot(address) != ZERO_ADDRESS:
            kind = ProxyKind.UUPS
        else:
            raise UnrecognizedProxyError(normalize_address(address))
        log.debug("introspect: %s is a %s proxy", address, kind.value)
        return kind


__all__ = [
    "IMPLEMENTATION_SLOT",
    "ADMIN_SLOT",
    "BEACON_SLOT",
    "ProxyKind",
    "ProxyIntrospector",
    "slot_to_address",
]
