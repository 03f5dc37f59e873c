"""IPv4 address arithmetic for fleet.

All conversions are plain bit operations on 32-bit integers so that they are
exact and reversible for every dotted quad and every mask width.
"""

from __future__ import annotations

from typing import List, Union

from fleet.constants import IP_RE, MASK_OCTETS
from fleet.exceptions import ValidationError


def valid_ip(ip: str) -> bool:
    if not isinstance(ip, str) or not IP_RE.match(ip):
        return False
    return all(int(octet) <= 255 for octet in ip.split("."))


def valid_mask(mask: str) -> bool:
    """Return True for a contiguous dotted-quad network mask."""
    if not valid_ip(mask):
        return False
    octets = [int(o) for o in mask.split(".")]
    if any(o not in MASK_OCTETS for o in octets):
        return False
    value = ip2dec(mask)
    inverted = ~value & 0xFFFFFFFF
    # host bits must be a run of trailing ones
    return inverted & (inverted + 1) == 0


def ip2dec(ip: str) -> int:
    if not valid_ip(ip):
        raise ValidationError(f"Invalid IP address '{ip}'")
    a, b, c, d = (int(o) for o in ip.split("."))
    return (a << 24) | (b << 16) | (c << 8) | d


def dec2ip(value: int) -> str:
    if value < 0 or value > 0xFFFFFFFF:
        raise ValidationError(f"Address value out of range: {value}")
    return ".".join(str((value >> shift) & 0xFF) for shift in (24, 16, 8, 0))


def _bits(value: Union[int, str]) -> int:
    try:
        bits = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid CIDR mask bits '{value}'")
    if bits < 0 or bits > 32:
        raise ValidationError(f"CIDR mask bits must be between 0 and 32 (got {bits})")
    return bits


def cdr2mask(bits: Union[int, str]) -> str:
    bits = _bits(bits)
    value = (0xFFFFFFFF << (32 - bits)) & 0xFFFFFFFF
    return dec2ip(value)


def mask2cdr(mask: str) -> int:
    if not valid_mask(mask):
        raise ValidationError(f"Invalid network mask '{mask}'")
    return bin(ip2dec(mask)).count("1")


def cdr2size(bits: Union[int, str]) -> int:
    """Number of addresses in a network, network and broadcast included."""
    return 1 << (32 - _bits(bits))


def to_mask(mask_or_bits: Union[int, str]) -> str:
    if isinstance(mask_or_bits, int) or str(mask_or_bits).isdigit():
        return cdr2mask(mask_or_bits)
    if not valid_mask(str(mask_or_bits)):
        raise ValidationError(f"Invalid network mask '{mask_or_bits}'")
    return str(mask_or_bits)


def get_network(ip: str, mask_or_bits: Union[int, str]) -> str:
    """Network address for ip under the mask, computed octet-wise with AND."""
    mask = to_mask(mask_or_bits)
    if not valid_ip(ip):
        raise ValidationError(f"Invalid IP address '{ip}'")
    return ".".join(str(int(i) & int(m)) for i, m in zip(ip.split("."), mask.split(".")))


def ipadd(ip: str, count: int) -> str:
    """Offset an address, ignoring subnet boundaries."""
    return dec2ip(ip2dec(ip) + count)


def broadcast(network: str, bits: Union[int, str]) -> str:
    return ipadd(network, cdr2size(bits) - 1)


def shard_name(ip: str) -> str:
    """Name of the /24 index file an address is stored in."""
    return get_network(ip, 24)


def shard_names(network: str, bits: Union[int, str]) -> List[str]:
    """Every /24 shard covering a network; one shard for /24 and smaller."""
    bits = _bits(bits)
    base = ip2dec(get_network(network, 24 if bits > 24 else bits))
    if bits >= 24:
        return [dec2ip(base)]
    return [dec2ip(base + i * 256) for i in range(2 ** (24 - bits))]


def split_cidr(value: str) -> tuple:
    """Split 'a.b.c.d/xx' or 'a.b.c.d/w.x.y.z' into (ip, bits or None)."""
    if "/" not in value:
        return value, None
    ip, _, mask = value.partition("/")
    if mask.isdigit():
        return ip, _bits(mask)
    return ip, mask2cdr(mask)
