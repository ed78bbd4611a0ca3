"""Error taxonomy shared by the codec, store and reconciliation services.

Every failure a caller is expected to act on has its own class and a stable
``code`` so that batch operations can collect and report them per item.
"""


class TraceError(Exception):
    code = "error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or self.__class__.__doc__ or self.code


# ── Barcode decoding ───────────────────────────────────────────────────────


class DecodeError(TraceError):
    """Malformed barcode."""

    code = "malformed"

    def __init__(self, message: str | None = None, *, raw: str | None = None):
        super().__init__(message)
        self.raw = raw


class MissingProductPrefix(DecodeError):
    """Barcode does not start with the 01 product code marker."""

    code = "missing_product_prefix"


class TruncatedProductCode(DecodeError):
    """Product code field is shorter than 14 digits."""

    code = "truncated_product_code"


class MissingSerialMarker(DecodeError):
    """Serial number marker (21) not found after the product code."""

    code = "missing_serial_marker"


class ExpiryMarkerNotFound(DecodeError):
    """No valid expiry date marker (17) after a serial number of acceptable length."""

    code = "expiry_marker_not_found"


class InvalidExpiryDigits(DecodeError):
    """A 17 marker follows a serial of acceptable length but no valid six-digit date follows it."""

    code = "invalid_expiry_digits"


class MissingLotMarker(DecodeError):
    """Lot/batch marker (10) does not follow the expiry date."""

    code = "missing_lot_marker"


class EmptyField(DecodeError):
    """A decoded field is empty."""

    code = "empty_field"

    def __init__(self, field: str, *, raw: str | None = None):
        super().__init__(f"Decoded field '{field}' is empty", raw=raw)
        self.field = field


# ── Reconciliation ─────────────────────────────────────────────────────────


class DuplicateSerial(TraceError):
    """Serial number already recorded in this scope."""

    code = "duplicate"

    def __init__(self, serial_numbers: list[str], message: str | None = None):
        shown = ", ".join(serial_numbers[:3])
        if len(serial_numbers) > 3:
            shown += "..."
        super().__init__(message or f"Serial number already recorded: {shown}")
        self.serial_numbers = serial_numbers


class ProductMismatch(TraceError):
    """Scanned product is not the product of the document line."""

    code = "wrong_product"

    def __init__(self, product_code: str, expected_product_code: str):
        super().__init__(f"Product {product_code} does not belong to this line (expected {expected_product_code})")
        self.product_code = product_code
        self.expected_product_code = expected_product_code


class QuantityExceeded(TraceError):
    """Recording would exceed the expected quantity."""

    code = "quantity_exceeded"

    def __init__(self, *, already: int, incoming: int, expected: int, line_item_id: str | None = None):
        where = f" for line {line_item_id}" if line_item_id else ""
        super().__init__(
            f"Quantity exceeded{where}: {already} recorded + {incoming} incoming > {expected} expected"
        )
        self.already = already
        self.incoming = incoming
        self.expected = expected
        self.line_item_id = line_item_id


# ── Lookup / storage ───────────────────────────────────────────────────────


class NotFound(TraceError):
    """Requested transfer or container does not exist."""

    code = "not_found"


class StoreError(TraceError):
    """Underlying persistence failure."""

    code = "store_error"
