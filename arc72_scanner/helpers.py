import base64
import binascii
from typing import Optional, Sequence

from algosdk import abi, encoding

from .errors import DecodeError
from .models import StateValue

ADDRESS_LEN = 32
SELECTOR_LEN = 4

# algod global-state value types
TEAL_BYTES = 1
TEAL_UINT = 2


# ---------------- helpers ----------------
def b64_bytes(x) -> bytes:
    if x is None: return b""
    if isinstance(x, (bytes, bytearray)): return bytes(x)
    try:
        return base64.b64decode(str(x), validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"bad base64 field: {e}") from None


def method_selector(signature: str) -> bytes:
    """First 4 bytes of sha512/256 over the ABI method signature."""
    return abi.Method.from_signature(signature).get_selector()


def checksum(data: bytes) -> bytes:
    return encoding.checksum(data)


def encode_addr(pk: bytes) -> Optional[str]:
    # 32-byte public key -> 58 char address; anything else is not an address
    if pk is None or len(pk) != ADDRESS_LEN:
        return None
    addr = encoding.encode_address(bytes(pk))
    return addr if encoding.is_valid_address(addr) else None


def to_addr(x) -> Optional[str]:
    """Normalize a block address field (address string or base64 key) to an address."""
    if x is None: return None
    if isinstance(x, str) and encoding.is_valid_address(x):
        return x
    addr = encode_addr(b64_bytes(x))
    if addr is None:
        raise DecodeError(f"not an address: {x!r}")
    return addr


def args_to_u256(args: Sequence[bytes]) -> int:
    # canonical big-endian read of the raw bytes; leading zeros do not matter
    h = b"".join(args).hex()
    return int(h or "0", 16)


def decode_state_value(v: dict) -> StateValue:
    """
    Global-state value as algod returns it: {type, bytes(base64), uint}.
    32-byte values are addresses, other byte values are text.
    """
    kind = int(v.get("type") or 0)
    if kind == TEAL_UINT or (kind != TEAL_BYTES and not v.get("bytes")):
        return StateValue("uint", int(v.get("uint") or 0))
    raw = b64_bytes(v.get("bytes") or "")
    addr = encode_addr(raw)
    if addr is not None:
        return StateValue("address", addr)
    return StateValue("text", raw.decode("utf-8", errors="replace"))


def state_key(key_b64: str) -> str:
    return b64_bytes(key_b64).decode("utf-8", errors="replace")
