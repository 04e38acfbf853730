"""
Codec normalizer for raw ledger query results.

The node has exposed the same logical records under several encodings over
time: camelCase or snake_case keys, plain positional tuples, enum variants as
bare strings or single-key maps, integers as numbers, grouped decimal strings
or hex, and fixed-point values at per-field scales. Every record type is
described here by a declared table of ``FieldSpec`` entries and resolved
through one code path, so scaling happens exactly once.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, NamedTuple, Optional, Tuple, Type, Union

from pydantic import ValidationError

from .exceptions import MalformedResponseError
from .identifiers import extract_128
from ._rate_limited_log import rate_limited_log
from .models import (
    NO_DATA, NoData, NormalizedRecord, Market, Location, EventSpec, UnderwriteRequest,
    Policy, AggState, OracleState, RollingState, RainBucket, LpPosition,
    SettlementResult, ThresholdTriggerLog, RequestCancellation
)

logger = logging.getLogger(__name__)

# i64 extremes drift slightly once they pass through a float-based encoder
DEFAULT_SENTINEL_THRESHOLD = 9 * 10 ** 18

_MISSING = object()

REQUEST_STATUSES = ("Pending", "PartiallyFilled", "FullyFilled", "Cancelled", "Expired")
POLICY_STATUSES = ("Active", "Triggered", "Matured", "Settled", "Expired", "Cancelled")
MARKET_STATUSES = ("Open", "Closed", "Settled")
MARKET_EVENT_TYPES = ("Rainfall24hRolling", "CumulativeRainfallWindow")
EVENT_TYPES = (
    "PrecipSumGte", "Precip1hGte", "TempMaxGte", "TempMinLte", "WindGustMaxGte",
    "PrecipTypeOccurred"
)

# Threshold unit -> decimal places of its fixed-point encoding
THRESHOLD_UNIT_SCALES: Dict[str, int] = {
    "MmX1000": 3,
    "CelsiusX1000": 3,
    "MpsX1000": 3,
    "PrecipTypeMask": 0,
}

# Aggregation variant -> (payload field, decimal places)
AGG_STATE_FIELDS: Dict[str, Tuple[str, int]] = {
    "PrecipSum": ("sum_mm_x1000", 3),
    "Precip1hMax": ("max_1h_mm_x1000", 3),
    "TempMax": ("max_c_x1000", 3),
    "TempMin": ("min_c_x1000", 3),
    "WindGustMax": ("max_mps_x1000", 3),
    "PrecipTypeOccurred": ("mask", 0),
}

USDT_DECIMALS = 6
COORDINATE_DECIMALS = 6
TENTHS = 1


def camel_case(name: str) -> str:
    """``max_1h_mm_x1000`` -> ``max1hMmX1000``"""
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


class FieldSpec(NamedTuple):
    """
    One logical field of a record.

    ``name`` is the snake_case wire name. Candidate keys are tried in the
    order camelCase, snake_case, then ``aliases``; if none is present the
    value at ``position`` of a positional payload is used. ``within`` names a
    nested struct (by wire name and position) that holds the field.
    """
    name: str
    kind: str = "int"
    scale: int = 0
    position: Optional[int] = None
    default: Any = _MISSING
    aliases: Tuple[str, ...] = ()
    choices: Tuple[str, ...] = ()
    target: Optional[str] = None
    within: Optional[Tuple[str, int]] = None

    @property
    def required(self) -> bool:
        return self.default is _MISSING

    @property
    def attribute(self) -> str:
        return self.target or self.name

    def candidate_keys(self) -> Tuple[str, ...]:
        keys = []
        for key in (camel_case(self.name), self.name) + self.aliases:
            if key not in keys:
                keys.append(key)
        return tuple(keys)


class Schema(NamedTuple):
    name: str
    model: Type[NormalizedRecord]
    fields: Tuple[FieldSpec, ...]


F = FieldSpec

EVENT_SPEC_FIELDS = (
    F("event_type", "variant", position=0, choices=EVENT_TYPES),
    F("threshold", "raw", position=1, default=None),
    F("early_trigger", "bool", position=2, default=False),
)

THRESHOLD_FIELDS = (
    F("value", "raw", position=0, aliases=("threshold_value", "thresholdValue")),
    F("unit", "raw", position=1, aliases=("threshold_unit", "thresholdUnit")),
)

SCHEMAS: Dict[str, Schema] = {
    "market": Schema("market", Market, (
        F("market_id", "int", position=0, target="id", aliases=("id",)),
        F("name", "text", position=1, default=""),
        F("center_latitude", "scaled", COORDINATE_DECIMALS, position=2),
        F("center_longitude", "scaled", COORDINATE_DECIMALS, position=3),
        F("event_type", "variant", position=4, default="Rainfall24hRolling", choices=MARKET_EVENT_TYPES),
        F("strike_value", "scaled", TENTHS, position=5, target="strike_value_mm",
          aliases=("strike_value_mm",)),
        F("payout_per_share", "scaled", USDT_DECIMALS, position=6),
        F("status", "variant", position=8, default="Open", choices=MARKET_STATUSES),
        F("dao_margin_bp", "int", within=("risk", 9), position=0, default=2000),
        F("min_duration_secs", "int", within=("window_rules", 10), position=0, default=86400),
        F("max_duration_secs", "int", within=("window_rules", 10), position=1, default=604800),
        F("min_lead_time_secs", "int", within=("window_rules", 10), position=2, default=1814400),
        F("timezone_offset_hours", "int", default=0),
    )),
    "location": Schema("location", Location, (
        F("location_id", "int", position=0, target="id", aliases=("id",)),
        F("accuweather_key", "text", position=1, default=""),
        F("latitude", "scaled", COORDINATE_DECIMALS, position=2),
        F("longitude", "scaled", COORDINATE_DECIMALS, position=3),
        F("name", "text", position=4, default=""),
        F("active", "bool", position=5, default=True),
    )),
    "event_spec": Schema("event_spec", EventSpec, EVENT_SPEC_FIELDS),
    "request": Schema("request", UnderwriteRequest, (
        F("request_id", "identifier", position=0, target="id", default=None, aliases=("id",)),
        F("requester", "address", position=1),
        F("location_id", "int", position=2),
        F("event_spec", "event_spec", position=3),
        F("total_shares", "int", position=4),
        F("filled_shares", "int", position=5, default=0),
        F("premium_per_share", "scaled", USDT_DECIMALS, position=6),
        F("payout_per_share", "scaled", USDT_DECIMALS, position=7),
        F("coverage_start", "int", position=8),
        F("coverage_end", "int", position=9),
        F("expires_at", "int", position=10),
        F("status", "variant", position=11, choices=REQUEST_STATUSES),
        F("created_at", "int", position=12, default=0),
    )),
    "policy": Schema("policy", Policy, (
        F("policy_id", "identifier", position=0, target="id", default=None, aliases=("id",)),
        F("holder", "address", position=1),
        F("location_id", "int", position=2),
        F("event_spec", "event_spec", position=3),
        F("total_shares", "int", position=4),
        F("premium_per_share", "scaled", USDT_DECIMALS, position=5),
        F("payout_per_share", "scaled", USDT_DECIMALS, position=6),
        F("coverage_start", "int", position=7),
        F("coverage_end", "int", position=8),
        F("status", "variant", position=9, choices=POLICY_STATUSES),
        F("defi_allocated", "bool", position=10, default=False),
        F("created_at", "int", position=11, default=0),
    )),
    "agg_state": Schema("agg_state", AggState, ()),
    "oracle_state": Schema("oracle_state", OracleState, (
        F("policy_id", "identifier", position=0, default=None),
        F("event_spec", "event_spec", position=1),
        F("agg_state", "agg_state", position=2),
        F("observed_until", "int", position=3, default=0),
        F("commitment", "hex", position=4, default=""),
        F("status", "variant", position=5, choices=POLICY_STATUSES),
    )),
    "rolling_state": Schema("rolling_state", RollingState, (
        F("last_bucket_index", "int", position=0),
        F("oldest_bucket_index", "int", position=1),
        F("rolling_sum_mm", "scaled", TENTHS, position=2),
    )),
    "rain_bucket": Schema("rain_bucket", RainBucket, (
        F("timestamp", "int", position=0),
        F("rainfall_mm", "scaled", TENTHS, position=1),
        F("block_number", "int", position=2, default=0),
    )),
    "lp_position": Schema("lp_position", LpPosition, (
        # policy_id sits at position 0 of the stored struct
        F("lp_shares", "int", position=1),
        F("principal_usdt", "scaled", USDT_DECIMALS, position=2),
    )),
    "settlement_result": Schema("settlement_result", SettlementResult, (
        F("event_occurred", "bool", position=0),
        F("payout_to_holder", "scaled", USDT_DECIMALS, position=1),
        F("returned_to_lps", "scaled", USDT_DECIMALS, position=2),
        F("settled_at", "int", position=3, default=0),
    )),
    "trigger_log": Schema("trigger_log", ThresholdTriggerLog, (
        F("trigger_id", "int", position=0),
        F("market_id", "int", position=1),
        F("policy_id", "identifier", position=2, default=None),
        F("triggered_at", "int", position=3),
        F("block_number", "int", position=4, default=0),
        F("rolling_sum_mm", "scaled", TENTHS, position=5),
        F("strike_threshold", "scaled", TENTHS, position=6, target="strike_threshold_mm",
          aliases=("strike_threshold_mm",)),
        F("holder", "address", position=7, default=""),
        F("payout_amount", "scaled", USDT_DECIMALS, position=8),
        F("center_latitude", "scaled", COORDINATE_DECIMALS, position=9),
        F("center_longitude", "scaled", COORDINATE_DECIMALS, position=10),
    )),
    "request_cancelled": Schema("request_cancelled", RequestCancellation, (
        F("request_id", "identifier", position=0, default=None),
        F("unfilled_shares", "int", position=1, default=0),
        F("premium_returned", "scaled", USDT_DECIMALS, position=2, aliases=("refund",)),
    )),
}

del F


# ---------------------------------------------------------------------------
# Scalar resolution
# ---------------------------------------------------------------------------

_GROUPING = str.maketrans("", "", ",_ '")


def parse_int(value: Any) -> int:
    """
    Parse an integer from any of the encodings the node produces.

    Grouping separators are stripped and ``0x`` strings are read as hex
    (u128 balances arrive that way from some encoders).

    Raises:
        ValueError: If the value is not an integer in any known encoding
    """
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"Expected an integer, got {value!r}")
        return int(value)
    if isinstance(value, Decimal):
        if value != value.to_integral_value():
            raise ValueError(f"Expected an integer, got {value!r}")
        return int(value)
    if isinstance(value, str):
        text = value.strip().translate(_GROUPING)
        negative = text.startswith("-")
        body = text[1:] if negative or text.startswith("+") else text
        if body.lower().startswith("0x"):
            number = int(body[2:], 16)
        else:
            if not body.isdigit():
                raise ValueError(f"Expected an integer, got {value!r}")
            number = int(body)
        return -number if negative else number
    raise ValueError(f"Expected an integer, got {type(value).__name__}")


def to_scaled(value: int, scale: int) -> Decimal:
    """Apply a fixed-point scale of ``scale`` decimal places, exactly."""
    if not scale:
        return Decimal(value)
    return Decimal(f"{value}E-{scale}")


def _is_decimal_text(value: str) -> bool:
    text = value.strip().lower()
    return not text.lstrip("+-").startswith("0x") and any(c in text for c in ".e")


def parse_scaled(value: Any, scale: int) -> Decimal:
    """
    Resolve a fixed-point field.

    The ledger encodes these as integers, which are scaled here. A ``Decimal``
    or a decimal string has already been scaled (it came out of a normalized
    record) and is returned as is.

    Raises:
        ValueError: If the value is neither an integer nor a decimal
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, str) and _is_decimal_text(value):
        try:
            return Decimal(value.strip().translate(_GROUPING))
        except InvalidOperation:
            raise ValueError(f"Expected a decimal, got {value!r}") from None
    return to_scaled(parse_int(value), scale)


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValueError(f"Expected a boolean, got {value!r}")


def decode_text(value: Any) -> str:
    """Decode bounded byte strings that arrive as hex, bytes or text."""
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, (list, tuple)) and all(isinstance(b, int) for b in value):
        raw = bytes(value)
    elif isinstance(value, str):
        if value.startswith("0x") and len(value) % 2 == 0:
            try:
                raw = bytes.fromhex(value[2:])
            except ValueError:
                return value
        else:
            return value
    else:
        raise ValueError(f"Expected text, got {type(value).__name__}")
    return raw.decode("utf-8", errors="replace").replace("\x00", "")


def _to_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, (list, tuple)) and all(isinstance(b, int) for b in value):
        return "0x" + bytes(value).hex()
    if isinstance(value, str):
        return value.lower()
    raise ValueError(f"Expected bytes, got {type(value).__name__}")


def _canonical_tag(tag: str) -> str:
    return tag.replace("_", "").lower()


def split_variant(value: Any) -> Tuple[str, Any]:
    """
    Split an enum value into its tag and payload.

    Accepted shapes are ``"Tag"``, ``{"Tag": payload}`` and
    ``{"type": "Tag", ...payload fields}``.

    Raises:
        ValueError: If the value has none of these shapes
    """
    if isinstance(value, str):
        return value, None
    if isinstance(value, Mapping):
        tag = value.get("type")
        if isinstance(tag, str):
            return tag, {k: v for k, v in value.items() if k != "type"}
        if len(value) == 1:
            key, payload = next(iter(value.items()))
            if isinstance(key, str):
                return key, payload
    raise ValueError(f"Unrecognised variant encoding: {value!r}")


def resolve_variant(value: Any, choices: Tuple[str, ...] = ()) -> str:
    """
    Resolve an enum value to its canonical tag.

    Known tags are matched case-insensitively with underscores ignored, so
    ``partially_filled`` and ``PARTIALLYFILLED`` both become
    ``PartiallyFilled``. Unknown tags are returned verbatim.

    Args:
        value: Bare string, single-key map or ``{"type": tag}`` map
        choices: Canonical spellings of the known tags

    Returns:
        The canonical tag
    """
    tag, _ = split_variant(value)
    wanted = _canonical_tag(tag)
    for choice in choices:
        if _canonical_tag(choice) == wanted:
            return choice
    if choices:
        logger.debug(f"Passing through unknown variant {tag!r}")
    return tag


# ---------------------------------------------------------------------------
# Field lookup
# ---------------------------------------------------------------------------

def _present(value: Any) -> bool:
    return value is not _MISSING and value is not None


def _lookup_in(raw: Any, keys: Tuple[str, ...], position: Optional[int]) -> Any:
    if isinstance(raw, Mapping):
        for key in keys:
            value = raw.get(key, _MISSING)
            if _present(value):
                return value
        if position is not None:
            for key in (str(position), position):
                value = raw.get(key, _MISSING)
                if _present(value):
                    return value
        return _MISSING
    if isinstance(raw, (list, tuple)) and position is not None and position < len(raw):
        value = raw[position]
        return value if value is not None else _MISSING
    return _MISSING


def lookup(raw: Any, spec: FieldSpec) -> Any:
    """Find the raw value for one field, or ``_MISSING``."""
    container = raw
    if spec.within is not None:
        wire_name, wire_position = spec.within
        container = _lookup_in(raw, (camel_case(wire_name), wire_name), wire_position)
        if container is _MISSING:
            # Older encoders flattened nested structs into the parent
            return _lookup_in(raw, spec.candidate_keys(), None)
    return _lookup_in(container, spec.candidate_keys(), spec.position)


# ---------------------------------------------------------------------------
# Composite values
# ---------------------------------------------------------------------------

def _accumulator(value: Any, scale: int, threshold: int) -> Union[Decimal, NoData]:
    if value is NO_DATA or value == NO_DATA.value:
        return NO_DATA
    if isinstance(value, Decimal) or (isinstance(value, str) and _is_decimal_text(value)):
        number = parse_scaled(value, scale)
        return NO_DATA if abs(number) >= threshold else number
    number = parse_int(value)
    if abs(number) >= threshold:
        return NO_DATA
    return to_scaled(number, scale)


def _build_event_spec(raw: Any, threshold: int) -> EventSpec:
    fields = {spec.name: spec for spec in EVENT_SPEC_FIELDS}
    values: Dict[str, Any] = {}

    event_type = lookup(raw, fields["event_type"])
    if event_type is _MISSING:
        raise ValueError("event_type")
    values["event_type"] = resolve_variant(event_type, EVENT_TYPES)

    # The threshold is either its own struct or flattened into the parent
    container = lookup(raw, fields["threshold"])
    if container is _MISSING:
        container = raw
    value_spec, unit_spec = THRESHOLD_FIELDS
    value = lookup(container, value_spec)
    unit = lookup(container, unit_spec)
    if value is _MISSING or unit is _MISSING:
        raise ValueError("threshold")
    values["threshold_unit"] = resolve_variant(unit, tuple(THRESHOLD_UNIT_SCALES))
    scale = THRESHOLD_UNIT_SCALES.get(values["threshold_unit"], 0)
    values["threshold_value"] = parse_scaled(value, scale)

    early = lookup(raw, fields["early_trigger"])
    values["early_trigger"] = parse_bool(early) if early is not _MISSING else False
    return EventSpec(**values)


def _build_agg_state(raw: Any, threshold: int) -> AggState:
    if isinstance(raw, (list, tuple)) and len(raw) == 2 and isinstance(raw[0], str):
        tag, payload = raw[0], raw[1]
    elif isinstance(raw, Mapping) and set(raw) == {"kind", "value"}:
        # A normalized AggState fed back in
        tag, payload = raw["kind"], raw["value"]
    else:
        tag, payload = split_variant(raw)
    kind = resolve_variant(tag, tuple(AGG_STATE_FIELDS))
    field_name, scale = AGG_STATE_FIELDS.get(kind, ("value", 0))

    if isinstance(payload, Mapping):
        value = _lookup_in(payload, (camel_case(field_name), field_name, "value"), 0)
        if value is _MISSING and len(payload) == 1:
            value = next(iter(payload.values()))
    elif isinstance(payload, (list, tuple)):
        value = payload[0] if payload else _MISSING
    elif payload is None:
        value = _MISSING
    else:
        value = payload

    if value is _MISSING:
        raise ValueError(field_name)
    return AggState(kind=kind, value=_accumulator(value, scale, threshold))


_BUILDERS: Dict[str, Callable[[Any, int], NormalizedRecord]] = {
    "event_spec": _build_event_spec,
    "agg_state": _build_agg_state,
}


def _convert(spec: FieldSpec, value: Any, threshold: int) -> Any:
    kind = spec.kind
    if kind == "int":
        return parse_int(value)
    if kind == "scaled":
        return parse_scaled(value, spec.scale)
    if kind == "text":
        return decode_text(value)
    if kind == "bool":
        return parse_bool(value)
    if kind == "variant":
        return resolve_variant(value, spec.choices)
    if kind == "identifier":
        identifier = extract_128(value)
        if identifier is None:
            rate_limited_log(
                f"Unreadable identifier in field {spec.name}: {value!r}",
                logger_instance=logger
            )
        return identifier
    if kind == "address":
        return _to_hex(value) if not isinstance(value, str) else value
    if kind == "hex":
        return _to_hex(value)
    if kind in _BUILDERS:
        return normalize(value, kind, sentinel_threshold=threshold)
    if kind == "raw":
        return value
    raise ValueError(f"Unknown field kind {kind!r}")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def get_schema(schema_hint: Union[str, Schema]) -> Schema:
    if isinstance(schema_hint, Schema):
        return schema_hint
    try:
        return SCHEMAS[schema_hint]
    except KeyError:
        raise ValueError(f"Unknown schema: {schema_hint}") from None


def normalize(raw: Any, schema_hint: Union[str, Schema],
              sentinel_threshold: int = DEFAULT_SENTINEL_THRESHOLD) -> NormalizedRecord:
    """
    Normalize a raw query result into its canonical record.

    Args:
        raw: Mapping (camelCase or snake_case keys), positional list/tuple, or
            an already normalized record
        schema_hint: Name of a schema in ``SCHEMAS`` or a ``Schema``
        sentinel_threshold: Magnitude at or above which accumulator values
            mean "never observed"

    Returns:
        The normalized record. A record of the requested type is returned
        unchanged, so normalizing twice never scales twice.

    Raises:
        MalformedResponseError: If a required field is missing under every
            naming convention or cannot be decoded
        ValueError: If the schema is unknown
    """
    schema = get_schema(schema_hint)

    if isinstance(raw, NormalizedRecord):
        if isinstance(raw, schema.model):
            return raw
        raise MalformedResponseError(
            f"Expected a {schema.name} record, got {type(raw).__name__}",
            schema=schema.name, raw=raw
        )

    builder = _BUILDERS.get(schema.name)
    if builder is not None:
        try:
            return builder(raw, sentinel_threshold)
        except (ValueError, TypeError) as e:
            raise MalformedResponseError(
                f"Cannot resolve {schema.name} field {e}",
                field=str(e), schema=schema.name, raw=raw
            ) from e

    if not isinstance(raw, (Mapping, list, tuple)):
        raise MalformedResponseError(
            f"Cannot normalize {type(raw).__name__} as {schema.name}",
            schema=schema.name, raw=raw
        )

    values: Dict[str, Any] = {}
    for spec in schema.fields:
        value = lookup(raw, spec)
        if value is _MISSING:
            if spec.required:
                raise MalformedResponseError(
                    f"Missing field {spec.name} in {schema.name} record",
                    field=spec.name, schema=schema.name, raw=raw
                )
            values[spec.attribute] = spec.default
            continue
        try:
            values[spec.attribute] = _convert(spec, value, sentinel_threshold)
        except MalformedResponseError:
            raise
        except (ValueError, TypeError) as e:
            raise MalformedResponseError(
                f"Cannot decode field {spec.name} in {schema.name} record: {e}",
                field=spec.name, schema=schema.name, raw=raw
            ) from e

    try:
        return schema.model(**values)
    except ValidationError as e:
        raise MalformedResponseError(
            f"Invalid {schema.name} record: {e}", schema=schema.name, raw=raw
        ) from e
