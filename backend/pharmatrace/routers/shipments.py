from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from pharmatrace.core.config import Settings
from pharmatrace.core.database import get_app_settings, get_db
from pharmatrace.schemas.schemas import (
    ContainerLookupOut,
    IngestOut,
    ManifestIn,
    ShipmentOut,
    ShipmentTreeOut,
)
from pharmatrace.services.hierarchy_store import HierarchyStore, build_tree
from pharmatrace.services.manifest_parser import flatten

router = APIRouter(prefix="/api", tags=["shipments"])


def get_store(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> HierarchyStore:
    return HierarchyStore(db, settings)


@router.post("/shipments", response_model=IngestOut)
def ingest_shipment(
    body: ManifestIn,
    response: Response,
    store: HierarchyStore = Depends(get_store),
):
    """Store a structured transfer manifest. Re-sending a known transfer is a no-op."""
    records = flatten(body.carriers)
    result = store.ingest(body, records, created_by=body.created_by)
    response.status_code = status.HTTP_201_CREATED if result.accepted else status.HTTP_200_OK
    return IngestOut(
        transfer_id=result.transfer_id,
        accepted=result.accepted,
        record_count=result.record_count,
        message=result.message,
    )


@router.get("/shipments/{transfer_id}", response_model=ShipmentOut)
def get_shipment(transfer_id: int, store: HierarchyStore = Depends(get_store)):
    shipment = store.get_by_transfer_id(transfer_id)
    return {"header": shipment.header, "records": shipment.records}


@router.get("/shipments/{transfer_id}/tree", response_model=ShipmentTreeOut)
def get_shipment_tree(transfer_id: int, store: HierarchyStore = Depends(get_store)):
    forest = store.get_tree(transfer_id)
    return {
        "transfer_id": transfer_id,
        "containers": forest.roots,
        "loose_units": forest.loose_units,
    }


@router.get("/containers/{label}", response_model=ContainerLookupOut)
def get_container(label: str, store: HierarchyStore = Depends(get_store)):
    """Everything nested under a carrier label, from the latest shipment that has it."""
    contents = store.get_by_container_label(label)
    return {
        "container_label": contents.container_label,
        "transfer_id": contents.transfer_id,
        "root": contents.root,
        "unit_count": len(contents.units),
        "container_count": len(contents.containers),
        "records": contents.records,
        "tree": build_tree(contents.records).roots,
    }
