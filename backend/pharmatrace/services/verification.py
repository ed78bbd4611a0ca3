"""
Submission of a shipment's units to the national traceability service.

The service itself is a collaborator: anything implementing
TraceabilityClient.verify can be passed in. Each call hands the client the
TraceabilityConfig (endpoint, credentials, timeout) to use for that request.
Product codes are sent as 14-digit fields, zero-padded on the left.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from pharmatrace.core.config import TraceabilityConfig
from pharmatrace.core.errors import NotFound
from pharmatrace.models.models import NotificationStatus
from pharmatrace.services.hierarchy_store import HierarchyStore, VerificationResult
from pharmatrace.services.identifier_codec import PRODUCT_FIELD_LENGTH, normalize_product_code

logger = logging.getLogger(__name__)

__all__ = ["SubmittedUnit", "TraceabilityClient", "VerificationResult", "verify_shipment"]


@dataclass(frozen=True)
class SubmittedUnit:
    product_code: str  # 14 digits
    serial_number: str
    lot_number: str | None = None
    expiry_raw: str | None = None  # YYMMDD


class TraceabilityClient(Protocol):
    def verify(self, units: list[SubmittedUnit], config: TraceabilityConfig) -> list[VerificationResult]:
        ...


def pad_product_code(code: str | None) -> str:
    return normalize_product_code(code).zfill(PRODUCT_FIELD_LENGTH)


def verify_shipment(
    store: HierarchyStore,
    client: TraceabilityClient,
    transfer_id: int,
    at: datetime | None = None,
    config: TraceabilityConfig | None = None,
) -> NotificationStatus:
    """Submit every unit of a shipment and store the answers.

    Without an explicit config the one built from the store's settings is
    used. Returns the rolled-up header status (OK only when every unit
    succeeded).
    """
    config = config or store.traceability_config()
    shipment = store.get_by_transfer_id(transfer_id)
    units = [
        SubmittedUnit(
            product_code=pad_product_code(record.product_code),
            serial_number=record.serial_number,
            lot_number=record.lot_number,
            expiry_raw=record.expiration_date.strftime("%y%m%d") if record.expiration_date else None,
        )
        for record in shipment.records
        if record.serial_number is not None
    ]
    if not units:
        raise NotFound(f"Shipment {transfer_id} has no units to verify")

    logger.info(
        "Submitting %d units of shipment %s for verification to %s",
        len(units), transfer_id, config.verify_url,
    )
    results = client.verify(units, config)
    return store.apply_verification(transfer_id, results, at=at)
