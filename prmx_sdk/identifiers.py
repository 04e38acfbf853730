"""
Validation and extraction of 128-bit ledger identifiers.

Request and policy identifiers are minted by the ledger as H128 values and
rendered as ``0x`` followed by 32 hex characters. The client never builds one
itself; it only checks and normalizes what the node reports.
"""
import logging
import re
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from ._rate_limited_log import rate_limited_log

logger = logging.getLogger(__name__)

ID128_PATTERN = re.compile(r"^0x[0-9a-fA-F]{32}$")
ID128_BYTES = 16
ID128_MAX = 2 ** 128

_HEX_BODY = re.compile(r"^[0-9a-fA-F]{32}$")
_HAS_HEX_LETTER = re.compile(r"[a-fA-F]")


def is_valid_128(value: Any) -> bool:
    """
    Check that a value is a canonical 128-bit identifier string.

    Args:
        value: Candidate identifier

    Returns:
        True when the value is ``0x`` plus exactly 32 hex characters
        (case-insensitive)
    """
    return isinstance(value, str) and ID128_PATTERN.match(value) is not None


def _from_int(value: int) -> Optional[str]:
    if value < 0 or value >= ID128_MAX:
        return None
    return "0x" + format(value, "032x")


def extract_128(field: Any) -> Optional[str]:
    """
    Normalize an event or storage field to a canonical identifier.

    Accepted forms are raw bytes (exactly 16), a hex string with or without
    the ``0x`` prefix, a non-negative integer below 2**128 and a decimal
    numeric string. The result is lowercase.

    Args:
        field: The raw field as reported by the node

    Returns:
        The canonical ``0x``-prefixed identifier, or None if the field cannot
        be read as one
    """
    if field is None or isinstance(field, bool):
        return None

    if isinstance(field, (bytes, bytearray, memoryview)):
        raw = bytes(field)
        if len(raw) != ID128_BYTES:
            return None
        return "0x" + raw.hex()

    if isinstance(field, int):
        return _from_int(field)

    if isinstance(field, (list, tuple)):
        # Some decoders hand back [u8; 16] as a list of ints
        if len(field) != ID128_BYTES or not all(isinstance(b, int) and 0 <= b < 256 for b in field):
            return None
        return "0x" + bytes(field).hex()

    if not isinstance(field, str):
        return None

    text = field.strip()
    if text.lower().startswith("0x"):
        return text.lower() if is_valid_128(text) else None

    if text.isdigit():
        return _from_int(int(text))

    # Unprefixed hex; all-digit strings were read as decimal above
    if _HEX_BODY.match(text) and _HAS_HEX_LETTER.search(text):
        return "0x" + text.lower()

    return None


def find_event_identifier(events: Iterable[Any], event_names: Sequence[str],
                          fields: Sequence[str] = ("request_id", "policy_id", "id")) -> Optional[str]:
    """
    Pull the first identifier out of a list of events.

    Args:
        events: EventRecord objects (or anything with ``event`` and
            ``attributes``)
        event_names: Event names that carry a freshly minted identifier, such
            as ``RequestCreated``
        fields: Attribute names to look at, in order. A positional attribute
            list falls back to its first element.

    Returns:
        The canonical identifier or None. An identifier that is present but
        invalid is logged and reported as None.
    """
    for event in events:
        if getattr(event, "event", None) not in event_names:
            continue
        raw = _pick_attribute(getattr(event, "attributes", None), fields)
        if raw is None:
            continue
        identifier = extract_128(raw)
        if identifier is None:
            rate_limited_log(
                f"Event {event} carried an unreadable identifier: {raw!r}",
                level="warning",
                logger_instance=logger
            )
        return identifier
    return None


def _pick_attribute(attributes: Any, fields: Sequence[str]) -> Any:
    if isinstance(attributes, Mapping):
        for name in fields:
            if name in attributes:
                return attributes[name]
        camel = [_camel(name) for name in fields]
        for name in camel:
            if name in attributes:
                return attributes[name]
        return None
    if isinstance(attributes, (list, tuple)) and attributes:
        return attributes[0]
    return None


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def collect_event_identifiers(events: Iterable[Any], modules: Optional[Iterable[str]] = None,
                              fields: Sequence[str] = ("request_id", "policy_id")) -> List[str]:
    """
    Collect every valid identifier carried by a list of events.

    Args:
        events: EventRecord objects
        modules: Only look at events emitted by these modules
        fields: Attribute names that hold identifiers

    Returns:
        Canonical identifiers in event order, without duplicates. Invalid
        values are logged and left out rather than replaced by a placeholder.
    """
    wanted = set(modules) if modules is not None else None
    found: List[str] = []
    for event in events:
        if wanted is not None and getattr(event, "module", None) not in wanted:
            continue
        attributes = getattr(event, "attributes", None)
        if not isinstance(attributes, Mapping):
            continue
        for name in fields:
            raw = _pick_attribute(attributes, (name,))
            if raw is None:
                continue
            identifier = extract_128(raw)
            if identifier is None:
                rate_limited_log(
                    f"Dropping unreadable {name} from {event}: {raw!r}",
                    level="warning",
                    logger_instance=logger
                )
            elif identifier not in found:
                found.append(identifier)
    return found
