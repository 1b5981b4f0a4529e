"""Decodificación del identificador de transmisor CGM."""

from __future__ import annotations

from typing import Any

from glucolink.model import DecodedTransmitterId, PackedTransmitterId, TransmitterId

_ALPHABET = "0123456789ABCDEFGHJKLMNPQRSTUWXY"
_BITMASK = 0x1F
_DECODED_LENGTH = 6
_PACKED_GROUPS = 5


def transmitter_id_from_raw(value: Any) -> TransmitterId:
    """Resolve a raw transmitter id into the packed or decoded variant.

    Newer transmitters report a readable 6-character id; older receivers pack
    it into an unsigned integer.

    Args:
        value: Id as read from the device (int or str).

    Returns:
        Tagged transmitter id.

    Raises:
        ValueError: If the value is neither a 6-character code nor an
            unsigned integer.
    """
    if isinstance(value, str) and len(value) == _DECODED_LENGTH:
        return DecodedTransmitterId(value)
    if isinstance(value, bool):
        raise ValueError(f"Invalid transmitter id: {value!r}")
    try:
        packed = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid transmitter id: {value!r}") from exc
    if packed < 0:
        raise ValueError(f"Invalid transmitter id: {value!r}")
    return PackedTransmitterId(packed)


def decode_transmitter_id(tid: TransmitterId) -> str:
    """Return the canonical display string for a transmitter id."""
    if isinstance(tid, DecodedTransmitterId):
        return tid.value

    packed = tid.value
    chars: list[str] = []
    for _ in range(_PACKED_GROUPS):
        chars.append(_ALPHABET[packed & _BITMASK])
        packed >>= 5
    return "".join(reversed(chars))
