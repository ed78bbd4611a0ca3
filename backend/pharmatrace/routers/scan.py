from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from pharmatrace.core.config import Settings
from pharmatrace.core.database import get_app_settings, get_db
from pharmatrace.schemas.schemas import (
    ContainerReceiveOut,
    ContainerReceiveRequest,
    DecodedOut,
    DecodeRequest,
    DeleteScansOut,
    DeleteScansRequest,
    ScanBatchOut,
    ScanOutcomeOut,
    ScanRequest,
)
from pharmatrace.services.identifier_codec import decode_many
from pharmatrace.services.reconciliation import (
    LineExpectation,
    LineScope,
    ReconciliationEngine,
    ScanOutcome,
    ScanStatus,
)

router = APIRouter(prefix="/api/scan", tags=["scan"])


def get_engine(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> ReconciliationEngine:
    return ReconciliationEngine(db, settings=settings)


def _outcome_out(outcome: ScanOutcome) -> ScanOutcomeOut:
    identifier = outcome.identifier
    return ScanOutcomeOut(
        raw=outcome.raw,
        status=outcome.status.value,
        serial_number=identifier.serial_number if identifier else None,
        product_code=identifier.product_code if identifier else None,
        error_code=outcome.error_code,
        message=outcome.message,
    )


@router.post("/decode", response_model=list[DecodedOut])
def decode_barcodes(body: DecodeRequest, settings: Settings = Depends(get_app_settings)):
    """Decode scanner input without recording anything."""
    results = decode_many(
        body.barcodes,
        min_serial_length=settings.MIN_SERIAL_LENGTH,
        max_serial_length=settings.MAX_SERIAL_LENGTH,
    )
    out = []
    for result in results:
        if not result.ok:
            out.append(DecodedOut(
                raw=result.raw,
                ok=False,
                error_code=result.error.code,
                message=result.error.message,
            ))
            continue
        identifier = result.identifier
        out.append(DecodedOut(
            raw=result.raw,
            ok=True,
            product_code=identifier.product_code,
            serial_number=identifier.serial_number,
            expiry_raw=identifier.expiry_raw,
            expiration_date=identifier.expiry_date,
            lot_number=identifier.lot_number,
        ))
    return out


@router.post("/documents/{document_id}/lines/{line_item_id}", response_model=ScanBatchOut)
def record_scans(
    document_id: str,
    line_item_id: str,
    body: ScanRequest,
    engine: ReconciliationEngine = Depends(get_engine),
):
    """
    Record unit scans against one document line. Every scan gets its own
    status; a rejected scan does not fail the request.
    """
    scope = LineScope(document_id, line_item_id)
    outcomes = engine.record_scans(
        scope,
        body.barcodes,
        expected_quantity=body.expected_quantity,
        user=body.recorded_by,
        product_code=body.product_code,
    )
    return ScanBatchOut(
        document_id=document_id,
        line_item_id=line_item_id,
        accepted_count=sum(1 for o in outcomes if o.status == ScanStatus.ACCEPTED),
        recorded_quantity=engine.recorded_quantity(scope),
        outcomes=[_outcome_out(o) for o in outcomes],
    )


@router.delete("/documents/{document_id}/lines/{line_item_id}", response_model=DeleteScansOut)
def delete_scans(
    document_id: str,
    line_item_id: str,
    body: DeleteScansRequest,
    engine: ReconciliationEngine = Depends(get_engine),
):
    result = engine.delete_scans(LineScope(document_id, line_item_id), body.serial_numbers)
    return DeleteScansOut(
        deleted_count=result.deleted_count,
        cleared_container_labels=result.cleared_container_labels,
    )


@router.post("/documents/{document_id}/containers", response_model=ContainerReceiveOut)
def receive_container(
    document_id: str,
    body: ContainerReceiveRequest,
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Record every expected unit inside a scanned carrier label, all or nothing."""
    receipt = engine.receive_container(
        document_id,
        body.container_label.strip(),
        [
            LineExpectation(
                line_item_id=line.line_item_id,
                product_code=line.product_code,
                expected_quantity=line.expected_quantity,
            )
            for line in body.lines
        ],
        user=body.recorded_by,
    )
    return ContainerReceiveOut(
        document_id=receipt.document_id,
        container_label=receipt.container_label,
        transfer_id=receipt.transfer_id,
        saved_count=receipt.saved_count,
        line_counts=receipt.line_counts,
    )


@router.delete("/documents/{document_id}/containers/{label}", response_model=DeleteScansOut)
def delete_container(
    document_id: str,
    label: str,
    engine: ReconciliationEngine = Depends(get_engine),
):
    result = engine.delete_container(document_id, label)
    return DeleteScansOut(
        deleted_count=result.deleted_count,
        cleared_container_labels=result.cleared_container_labels,
        product_counts=result.product_counts,
    )
