"""
Decoder for serialized-unit 2D barcodes (GS1 DataMatrix, pharma subset).

A unit barcode carries four Application Identifiers in fixed order:

    01 + 14-digit product code
    21 + serial number (variable length)
    17 + YYMMDD expiry date
    10 + lot/batch (variable length, last field)

Example: 010869897809003521H2200000425677172711301024005B73
         ├─┬────────────┤├┬────────────┤├┬────┤├┬──────┘
         │ │            ││ │           ││ │   ││ └── Lot: 24005B73
         │ │            ││ │           ││ │   │└── AI 10
         │ │            ││ │           ││ └── Expiry: 271130
         │ │            ││ │           │└── AI 17
         │ │            ││ └── Serial: H2200000425677
         │ │            │└── AI 21
         │ └── Product code field: 08698978090035 (stored as 8698978090035)
         └── AI 01

The serial number is not terminated by a separator, so the end of the
serial is found by scanning for a "17" marker that is followed by a valid
date and leaves a serial of at least MIN_SERIAL_LENGTH characters.
"""

import calendar
import re
from dataclasses import dataclass
from datetime import date

from pharmatrace.core.errors import (
    DecodeError,
    EmptyField,
    ExpiryMarkerNotFound,
    InvalidExpiryDigits,
    MissingLotMarker,
    MissingProductPrefix,
    MissingSerialMarker,
    TruncatedProductCode,
)

# GS separator character (ASCII 29)
GS = "\x1d"

AI_PRODUCT = "01"
AI_SERIAL = "21"
AI_EXPIRY = "17"
AI_LOT = "10"
AI_SSCC = "00"

PRODUCT_FIELD_LENGTH = 14
EXPIRY_LENGTH = 6
SSCC_LENGTH = 18

MIN_SERIAL_LENGTH = 4
MAX_SERIAL_LENGTH = 20

# Symbology identifier prefixes that scanners prepend (ISO/IEC 15424)
_SYMBOLOGY_PREFIXES = re.compile(r"^\](?:[A-Za-z]\d)")

# Common GS placeholder patterns that some scanners emit instead of ASCII 29
_GS_PLACEHOLDERS = re.compile(r"\{GS}|<GS>|\u241d", re.IGNORECASE)

# Whitespace to drop; str.isspace() also matches GS so \s cannot be used
_BLANKS = re.compile(r"[ \t\r\n]+")


@dataclass(frozen=True)
class UnitIdentifier:
    product_code: str  # 13 digits, pack indicator dropped
    serial_number: str
    expiry_raw: str  # YYMMDD
    lot_number: str
    product_code_raw: str | None = None  # full 14-digit field as scanned

    @property
    def expiry_date(self) -> date | None:
        return parse_expiry(self.expiry_raw)

    @property
    def normalized_product_code(self) -> str:
        return normalize_product_code(self.product_code)


@dataclass(frozen=True)
class DecodeResult:
    raw: str
    identifier: UnitIdentifier | None = None
    error: DecodeError | None = None

    @property
    def ok(self) -> bool:
        return self.identifier is not None


def normalize_scan(raw: str) -> str:
    """Normalize raw scanner output.

    - Drops spaces, tabs, CR and LF
    - Removes symbology identifier prefixes (e.g. ]d2, ]C1, ]e0)
    - Replaces GS placeholders with actual ASCII 29
    - Strips leading/trailing GS
    """
    s = _BLANKS.sub("", raw or "")
    s = _SYMBOLOGY_PREFIXES.sub("", s)
    s = _GS_PLACEHOLDERS.sub(GS, s)
    return s.strip(GS)


def normalize_product_code(code: str | None) -> str:
    """Product codes compare equal regardless of leading zero padding."""
    return (code or "").strip().lstrip("0")


def is_valid_expiry(value: str) -> bool:
    """Six digits with month 01-12 and day 01-31."""
    if len(value) != EXPIRY_LENGTH or not value.isdigit():
        return False
    mm = int(value[2:4])
    dd = int(value[4:6])
    return 1 <= mm <= 12 and 1 <= dd <= 31


def parse_expiry(value: str | None) -> date | None:
    """Convert a YYMMDD expiry to a date.

    Years 00-50 map to 2000-2050, 51-99 to 1951-1999. Day 00 means the last
    day of the month. Returns None for anything that is not a real date.
    """
    if not value or len(value) != EXPIRY_LENGTH or not value.isdigit():
        return None

    yy = int(value[0:2])
    mm = int(value[2:4])
    dd = int(value[4:6])

    year = 2000 + yy if yy <= 50 else 1900 + yy

    if mm < 1 or mm > 12:
        return None

    if dd == 0:
        dd = calendar.monthrange(year, mm)[1]

    try:
        return date(year, mm, dd)
    except ValueError:
        return None


def _find_expiry_marker(s: str, serial_start: int, min_serial: int, max_serial: int) -> int:
    search_end = min(serial_start + max_serial, len(s) - (len(AI_EXPIRY) + EXPIRY_LENGTH))
    for i in range(serial_start, search_end + 1):
        if s[i:i + 2] != AI_EXPIRY:
            continue
        if not is_valid_expiry(s[i + 2:i + 2 + EXPIRY_LENGTH]):
            continue
        if len(s[serial_start:i].rstrip(GS)) < min_serial:
            continue
        return i
    return -1


def _has_expiry_marker(s: str, serial_start: int, min_serial: int, max_serial: int) -> bool:
    """True when a 17 sits where the expiry marker may start, whatever follows it."""
    first = serial_start + min_serial
    return any(
        s[i:i + 2] == AI_EXPIRY
        for i in range(first, min(serial_start + max_serial, len(s) - len(AI_EXPIRY)) + 1)
    )


def decode(
    raw: str,
    *,
    min_serial_length: int = MIN_SERIAL_LENGTH,
    max_serial_length: int = MAX_SERIAL_LENGTH,
) -> UnitIdentifier:
    """Decode one scanned unit barcode.

    Raises a DecodeError subclass naming the first rule the input breaks.
    """
    s = normalize_scan(raw)

    if not s.startswith(AI_PRODUCT):
        raise MissingProductPrefix(raw=raw)
    pos = len(AI_PRODUCT)

    product_field = s[pos:pos + PRODUCT_FIELD_LENGTH]
    if len(product_field) < PRODUCT_FIELD_LENGTH or not product_field.isdigit():
        raise TruncatedProductCode(raw=raw)
    pos += PRODUCT_FIELD_LENGTH

    if s[pos:pos + 2] != AI_SERIAL:
        raise MissingSerialMarker(raw=raw)
    pos += len(AI_SERIAL)

    serial_start = pos
    expiry_pos = _find_expiry_marker(s, serial_start, min_serial_length, max_serial_length)
    if expiry_pos == -1:
        if _has_expiry_marker(s, serial_start, min_serial_length, max_serial_length):
            raise InvalidExpiryDigits(raw=raw)
        raise ExpiryMarkerNotFound(raw=raw)

    serial_number = s[serial_start:expiry_pos].rstrip(GS).strip()
    pos = expiry_pos + len(AI_EXPIRY)

    expiry_raw = s[pos:pos + EXPIRY_LENGTH]
    pos += EXPIRY_LENGTH

    # A group separator may sit in front of the final field
    if s[pos:pos + 1] == GS:
        pos += 1
    if s[pos:pos + 2] != AI_LOT:
        raise MissingLotMarker(raw=raw)
    pos += len(AI_LOT)

    lot_number = s[pos:].rstrip(GS)

    product_code = product_field[1:]
    for field, value in (
        ("product_code", product_code),
        ("serial_number", serial_number),
        ("expiry", expiry_raw),
        ("lot_number", lot_number),
    ):
        if not value:
            raise EmptyField(field, raw=raw)

    return UnitIdentifier(
        product_code=product_code,
        serial_number=serial_number,
        expiry_raw=expiry_raw,
        lot_number=lot_number,
        product_code_raw=product_field,
    )


def decode_many(raws: list[str], **kwargs) -> list[DecodeResult]:
    """Decode a batch; a malformed scan is reported, never raised."""
    results: list[DecodeResult] = []
    for raw in raws:
        try:
            results.append(DecodeResult(raw=raw, identifier=decode(raw, **kwargs)))
        except DecodeError as exc:
            results.append(DecodeResult(raw=raw, error=exc))
    return results


def encode_identifier(
    product_code: str,
    serial_number: str,
    expiry_raw: str,
    lot_number: str,
    *,
    indicator: str = "0",
    group_separator: bool = False,
) -> str:
    """Build the concatenated barcode string for a unit identifier.

    A 13-digit product code gets ``indicator`` prepended to fill the
    14-digit field; a 14-digit code is used as-is.
    """
    field = product_code if len(product_code) == PRODUCT_FIELD_LENGTH else f"{indicator}{product_code}"
    separator = GS if group_separator else ""
    return (
        f"{AI_PRODUCT}{field}"
        f"{AI_SERIAL}{serial_number}"
        f"{AI_EXPIRY}{expiry_raw}"
        f"{separator}{AI_LOT}{lot_number}"
    )


def detect_barcode_type(raw: str) -> str:
    """
    Returns:
        "container" - SSCC carrier label (starts with 00)
        "unit"      - serialized unit barcode (01 ... 21 ... 17 ...)
        "unknown"   - anything else
    """
    s = normalize_scan(raw)
    if not s:
        return "unknown"
    if s.startswith(AI_SSCC):
        return "container"
    if s.startswith(AI_PRODUCT) and AI_SERIAL in s and AI_EXPIRY in s:
        return "unit"
    return "unknown"


def extract_sscc(raw: str) -> str:
    """Return the 18-character SSCC from a carrier label; other input is returned normalized."""
    s = normalize_scan(raw)
    if not s.startswith(AI_SSCC):
        return s
    return s[len(AI_SSCC):len(AI_SSCC) + SSCC_LENGTH]
