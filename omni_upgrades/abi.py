"""
Minimal Solidity ABI codec for the proxy entry points this package calls.

Only what the orchestrator itself needs is here: constructors of the proxy
building blocks, `upgradeToAndCall`, `upgradeAndCall`, `upgradeTo`, `owner()`
and revert payload decoding. General contract-call encoding is the host
environment's job.

Supported static types: address, uint256, bool, bytes32.
Supported dynamic types: bytes, string.
"""

from __future__ import annotations

import re
from typing import Any, List, Optional, Sequence, Tuple, Union

from Crypto.Hash import keccak as _keccak

BytesLike = Union[bytes, bytearray, memoryview]

ZERO_ADDRESS = "0x" + "00" * 20

_ADDR_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_STATIC = {"address", "uint256", "bool", "bytes32"}
_DYNAMIC = {"bytes", "string"}


def keccak256(data: BytesLike) -> bytes:
    h = _keccak.new(digest_bits=256)
    h.update(bytes(data))
    return h.digest()


def function_selector(signature: str) -> bytes:
    """First four bytes of keccak256 over the canonical signature, e.g. 'upgradeTo(address)'."""
    return keccak256(signature.replace(" ", "").encode("ascii"))[:4]


# --- hex / addresses -----------------------------------------------------------


def to_hex(b: BytesLike, prefix: bool = True) -> str:
    s = bytes(b).hex()
    return f"0x{s}" if prefix else s


def from_hex(s: str) -> bytes:
    if not isinstance(s, str):
        raise TypeError("from_hex expects a string")
    if s.startswith(("0x", "0X")):
        s = s[2:]
    if len(s) % 2 != 0:
        raise ValueError("hex string must have even length")
    try:
        return bytes.fromhex(s)
    except ValueError as e:
        raise ValueError(f"invalid hex string: {e}") from e


def normalize_address(addr: Union[str, BytesLike]) -> str:
    """Lowercase 0x-prefixed 20-byte address; accepts hex strings or raw bytes."""
    if isinstance(addr, (bytes, bytearray, memoryview)):
        raw = bytes(addr)
        if len(raw) != 20:
            raise ValueError(f"address must be 20 bytes, got {len(raw)}")
        return "0x" + raw.hex()
    if not isinstance(addr, str) or not _ADDR_RE.match(addr):
        raise ValueError(f"invalid address: {addr!r}")
    return addr.lower()


# --- encoding --------------------------------------------------------------------


def _word(n: int) -> bytes:
    if n < 0 or n >= 1 << 256:
        raise ValueError(f"value out of uint256 range: {n}")
    return n.to_bytes(32, "big")


def _pad_right(b: bytes) -> bytes:
    rem = len(b) % 32
    return b if rem == 0 else b + b"\x00" * (32 - rem)


def _encode_static(typ: str, value: Any) -> bytes:
    if typ == "address":
        return b"\x00" * 12 + from_hex(normalize_address(value))
    if typ == "uint256":
        return _word(int(value))
    if typ == "bool":
        return _word(1 if value else 0)
    if typ == "bytes32":
        raw = from_hex(value) if isinstance(value, str) else bytes(value)
        if len(raw) != 32:
            raise ValueError("bytes32 value must be exactly 32 bytes")
        return raw
    raise ValueError(f"unsupported ABI type: {typ}")


def _encode_dynamic(typ: str, value: Any) -> bytes:
    if typ == "string":
        raw = str(value).encode("utf-8")
    else:
        raw = from_hex(value) if isinstance(value, str) else bytes(value)
    return _word(len(raw)) + _pad_right(raw)


def encode_args(types: Sequence[str], values: Sequence[Any]) -> bytes:
    """ABI-encode a flat argument tuple (head/tail layout)."""
    if len(types) != len(values):
        raise ValueError(f"expected {len(types)} values, got {len(values)}")
    heads: List[bytes] = []
    tails: List[bytes] = []
    tail_offset = 32 * len(types)
    for typ, value in zip(types, values):
        if typ in _DYNAMIC:
            enc = _encode_dynamic(typ, value)
            heads.append(_word(tail_offset))
            tails.append(enc)
            tail_offset += len(enc)
        elif typ in _STATIC:
            heads.append(_encode_static(typ, value))
        else:
            raise ValueError(f"unsupported ABI type: {typ}")
    return b"".join(heads) + b"".join(tails)


def encode_call(signature: str, *values: Any) -> bytes:
    """Selector plus encoded arguments; types are taken from the signature."""
    m = re.match(r"^\s*[A-Za-z_][A-Za-z0-9_]*\((.*)\)\s*$", signature)
    if not m:
        raise ValueError(f"malformed function signature: {signature!r}")
    inner = m.group(1).replace(" ", "")
    types = [t for t in inner.split(",") if t]
    return function_selector(signature) + encode_args(types, values)


# --- decoding --------------------------------------------------------------------


def _decode_static(typ: str, word: bytes) -> Any:
    if typ == "address":
        return "0x" + word[12:].hex()
    if typ == "uint256":
        return int.from_bytes(word, "big")
    if typ == "bool":
        return int.from_bytes(word, "big") != 0
    if typ == "bytes32":
        return bytes(word)
    raise ValueError(f"unsupported ABI type: {typ}")


def decode_args(types: Sequence[str], data: BytesLike) -> Tuple[Any, ...]:
    buf = bytes(data)
    if len(buf) < 32 * len(types):
        raise ValueError("ABI payload shorter than its head")
    out: List[Any] = []
    for i, typ in enumerate(types):
        word = buf[32 * i: 32 * (i + 1)]
        if typ in _DYNAMIC:
            offset = int.from_bytes(word, "big")
            length = int.from_bytes(buf[offset: offset + 32], "big")
            raw = buf[offset + 32: offset + 32 + length]
            if len(raw) != length:
                raise ValueError("truncated dynamic ABI value")
            out.append(raw.decode("utf-8") if typ == "string" else raw)
        elif typ in _STATIC:
            out.append(_decode_static(typ, word))
        else:
            raise ValueError(f"unsupported ABI type: {typ}")
    return tuple(out)


# --- revert payloads -------------------------------------------------------------

ERROR_STRING = function_selector("Error(string)")
OWNABLE_UNAUTHORIZED = function_selector("OwnableUnauthorizedAccount(address)")
ACCESS_CONTROL_UNAUTHORIZED = function_selector("AccessControlUnauthorizedAccount(address,bytes32)")
PROXY_DENIED_ADMIN_ACCESS = function_selector("ProxyDeniedAdminAccess()")

_LEGACY_AUTH_MESSAGES = (
    "Ownable: caller is not the owner",
    "AccessControl: account ",
    "caller is not the admin",
)


def decode_revert(data: BytesLike) -> Optional[str]:
    """Human-readable reason for a revert payload, or None when unknown."""
    raw = bytes(data)
    if len(raw) < 4:
        return None
    sel, body = raw[:4], raw[4:]
    try:
        if sel == ERROR_STRING:
            return decode_args(["string"], body)[0]
        if sel == OWNABLE_UNAUTHORIZED:
            (account,) = decode_args(["address"], body)
            return f"OwnableUnauthorizedAccount({account})"
        if sel == ACCESS_CONTROL_UNAUTHORIZED:
            account, role = decode_args(["address", "bytes32"], body)
            return f"AccessControlUnauthorizedAccount({account}, 0x{role.hex()})"
        if sel == PROXY_DENIED_ADMIN_ACCESS:
            return "ProxyDeniedAdminAccess()"
    except ValueError:
        return None
    return None


def is_authorization_revert(data: BytesLike) -> bool:
    raw = bytes(data)
    if raw[:4] in (OWNABLE_UNAUTHORIZED, ACCESS_CONTROL_UNAUTHORIZED, PROXY_DENIED_ADMIN_ACCESS):
        return True
    reason = decode_revert(raw)
    return bool(reason) and any(reason.startswith(m) for m in _LEGACY_AUTH_MESSAGES)


__all__ = [
    "ZERO_ADDRESS",
    "keccak256",
    "function_selector",
    "to_hex",
    "from_hex",
    "normalize_address",
    "encode_args",
    "encode_call",
    "decode_args",
    "decode_revert",
    "is_authorization_revert",
]
