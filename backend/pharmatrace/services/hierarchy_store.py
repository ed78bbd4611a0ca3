"""
Persistence and reconstruction of shipment hierarchies.

Ingestion is idempotent per transfer id and atomic: the header and every
hierarchy row are committed together or not at all. Container lookups expand
a label recursively (recursive CTE over parent_container_label) inside the
most recent shipment that carries it.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from pharmatrace.core.config import Settings, TraceabilityConfig, get_settings
from pharmatrace.core.errors import NotFound, StoreError
from pharmatrace.models.models import HierarchyRecord, NotificationStatus, ShipmentHeader
from pharmatrace.schemas.schemas import ShipmentHeaderIn
from pharmatrace.services.identifier_codec import detect_barcode_type, extract_sscc, normalize_product_code
from pharmatrace.services.manifest_parser import count_contents

logger = logging.getLogger(__name__)

# Per-unit answer codes from the traceability service that count as success
# once leading zeros are dropped (00000 -> 0, 00001 -> 1)
SUCCESS_CODES = frozenset({"0", "1"})


def normalize_status_code(code: str | None) -> str:
    code = (code or "").strip()
    if not code:
        return ""
    return code.lstrip("0") or "0"


@dataclass
class IngestResult:
    transfer_id: int
    accepted: bool
    record_count: int = 0

    @property
    def message(self) -> str:
        if self.accepted:
            return f"Shipment {self.transfer_id} ingested with {self.record_count} records"
        return f"Shipment {self.transfer_id} already ingested"


@dataclass
class Shipment:
    header: ShipmentHeader
    records: list[HierarchyRecord]


@dataclass
class ContainerNode:
    container_label: str
    parent_container_label: str | None = None
    container_type: str | None = None
    container_level: int | None = None
    transfer_id: int | None = None
    record: HierarchyRecord | None = None  # the container row itself
    units: list[HierarchyRecord] = field(default_factory=list)
    children: list["ContainerNode"] = field(default_factory=list)

    def iter_units(self):
        yield from self.units
        for child in self.children:
            yield from child.iter_units()


@dataclass
class Forest:
    roots: list[ContainerNode] = field(default_factory=list)
    loose_units: list[HierarchyRecord] = field(default_factory=list)  # not inside any container


@dataclass
class ContainerContents:
    container_label: str
    transfer_id: int
    root: HierarchyRecord
    records: list[HierarchyRecord]

    @property
    def units(self) -> list[HierarchyRecord]:
        return [r for r in self.records if r.serial_number is not None]

    @property
    def containers(self) -> list[HierarchyRecord]:
        return [r for r in self.records if r.serial_number is None]


@dataclass
class VerificationResult:
    product_code: str
    serial_number: str
    status_code: str


# ── Pure tree helpers ──────────────────────────────────────────────────────


def build_tree(records: Iterable[HierarchyRecord]) -> Forest:
    """Rebuild the container forest of one shipment from its flat rows.

    Nodes are keyed by container_label. A container whose parent label has
    no node becomes a root; units without a container label are kept as
    loose units of the forest.
    """
    nodes: dict[str, ContainerNode] = {}
    forest = Forest()

    def node_for(record: HierarchyRecord) -> ContainerNode:
        node = nodes.get(record.container_label)
        if node is None:
            node = ContainerNode(
                container_label=record.container_label,
                parent_container_label=record.parent_container_label,
                container_level=record.container_level,
                transfer_id=record.transfer_id,
            )
            nodes[record.container_label] = node
        return node

    for record in records:
        if record.container_label is None:
            if record.serial_number is not None:
                forest.loose_units.append(record)
            continue

        node = node_for(record)
        if record.serial_number is None:
            node.record = record
            node.container_type = record.container_type
            node.parent_container_label = record.parent_container_label
            node.container_level = record.container_level
        else:
            node.units.append(record)

    for node in nodes.values():
        parent = nodes.get(node.parent_container_label) if node.parent_container_label else None
        if parent is None or parent is node:
            forest.roots.append(node)
        else:
            parent.children.append(node)

    return forest


def flatten_tree(forest: Forest) -> list[HierarchyRecord]:
    """Inverse of build_tree: every record reachable from the forest, depth-first."""
    out: list[HierarchyRecord] = list(forest.loose_units)

    def walk(node: ContainerNode) -> None:
        if node.record is not None:
            out.append(node.record)
        out.extend(node.units)
        for child in node.children:
            walk(child)

    for root in forest.roots:
        walk(root)
    return out


# ── Store ──────────────────────────────────────────────────────────────────


class HierarchyStore:
    """Reads and writes shipment hierarchies through one SQLAlchemy session.

    Nothing is cached between calls; every query goes to the database.
    """

    def __init__(self, db: Session, settings: Settings | None = None):
        self.db = db
        self.settings = settings

    def traceability_config(self) -> TraceabilityConfig:
        return (self.settings or get_settings()).traceability()

    def exists(self, transfer_id: int) -> bool:
        return (
            self.db.query(ShipmentHeader.transfer_id)
            .filter(ShipmentHeader.transfer_id == transfer_id)
            .first()
            is not None
        )

    def ingest(
        self,
        header: ShipmentHeaderIn,
        records: list[HierarchyRecord],
        created_by: str | None = None,
    ) -> IngestResult:
        """Insert a shipment header and its records in one transaction.

        A transfer id that is already stored is a no-op (accepted=False).
        After a StoreError the outcome is unknown: re-check with
        get_by_transfer_id before retrying.
        """
        transfer_id = header.transfer_id
        if self.exists(transfer_id):
            logger.warning("Shipment %s already ingested, skipping", transfer_id)
            return IngestResult(transfer_id=transfer_id, accepted=False)

        item_count, unit_count = count_contents(records)
        values = {name: getattr(header, name) for name in ShipmentHeaderIn.model_fields}
        shipment = ShipmentHeader(
            **values,
            item_count=item_count,
            unit_count=unit_count,
            created_by=created_by,
        )
        for record in records:
            record.transfer_id = transfer_id
        shipment.records.extend(records)

        try:
            self.db.add(shipment)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            # Lost a race against a concurrent ingest of the same transfer
            if self.exists(transfer_id):
                logger.warning("Shipment %s ingested concurrently, skipping", transfer_id)
                return IngestResult(transfer_id=transfer_id, accepted=False)
            logger.exception("Failed to ingest shipment %s", transfer_id)
            raise StoreError(f"Failed to ingest shipment {transfer_id}") from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to ingest shipment %s", transfer_id)
            raise StoreError(f"Failed to ingest shipment {transfer_id}") from exc

        logger.info(
            "Ingested shipment %s: %d records, %d units, %d products",
            transfer_id, len(records), unit_count, item_count,
        )
        return IngestResult(transfer_id=transfer_id, accepted=True, record_count=len(records))

    def get_by_transfer_id(self, transfer_id: int) -> Shipment:
        header = self.db.get(ShipmentHeader, transfer_id)
        if not header:
            raise NotFound(f"Shipment {transfer_id} not found")

        records = (
            self.db.query(HierarchyRecord)
            .filter(HierarchyRecord.transfer_id == transfer_id)
            .order_by(HierarchyRecord.container_level, HierarchyRecord.id)
            .all()
        )
        return Shipment(header=header, records=records)

    def get_tree(self, transfer_id: int) -> Forest:
        return build_tree(self.get_by_transfer_id(transfer_id).records)

    def latest_transfer_for_label(self, label: str) -> int | None:
        return (
            self.db.query(func.max(HierarchyRecord.transfer_id))
            .filter(HierarchyRecord.container_label == label)
            .scalar()
        )

    def resolve_container_label(self, label: str) -> tuple[str, int | None]:
        """Map operator input to a stored container label and its latest transfer.

        A scanned carrier label (00 + SSCC) that is not stored verbatim is
        looked up by its SSCC.
        """
        label = (label or "").strip()
        if not label:
            return label, None
        transfer_id = self.latest_transfer_for_label(label)
        if transfer_id is None and detect_barcode_type(label) == "container":
            sscc = extract_sscc(label)
            transfer_id = self.latest_transfer_for_label(sscc)
            if transfer_id is not None:
                label = sscc
        return label, transfer_id

    def get_by_container_label(self, label: str) -> ContainerContents:
        """Return the container and everything nested beneath it.

        When the label appears in several shipments the one with the highest
        transfer id is used, and expansion never leaves that shipment.
        """
        label, transfer_id = self.resolve_container_label(label)
        if transfer_id is None:
            raise NotFound(f"Container {label} not found")

        anchor = (
            select(
                HierarchyRecord.id,
                HierarchyRecord.container_label,
                HierarchyRecord.serial_number,
            )
            .where(
                HierarchyRecord.transfer_id == transfer_id,
                HierarchyRecord.container_label == label,
            )
            .cte("container_tree", recursive=True)
        )
        parent = anchor.alias()
        child = aliased(HierarchyRecord)
        # Only container rows (serial_number IS NULL) are expanded further
        tree = anchor.union(
            select(child.id, child.container_label, child.serial_number).where(
                child.transfer_id == transfer_id,
                child.parent_container_label == parent.c.container_label,
                parent.c.serial_number.is_(None),
            )
        )

        records = (
            self.db.query(HierarchyRecord)
            .filter(HierarchyRecord.id.in_(select(tree.c.id)))
            .order_by(HierarchyRecord.container_level, HierarchyRecord.id)
            .all()
        )

        root = next(
            (r for r in records if r.container_label == label and r.serial_number is None),
            None,
        ) or next(r for r in records if r.container_label == label)

        return ContainerContents(
            container_label=label,
            transfer_id=transfer_id,
            root=root,
            records=records,
        )

    def apply_verification(
        self,
        transfer_id: int,
        results: list[VerificationResult],
        at: datetime | None = None,
    ) -> NotificationStatus:
        """Store per-unit answers and roll them up into the header status."""
        shipment = self.get_by_transfer_id(transfer_id)
        at = at or datetime.now(timezone.utc)

        by_unit: dict[tuple[str, str], list[HierarchyRecord]] = defaultdict(list)
        for record in shipment.records:
            if record.serial_number is not None:
                key = (normalize_product_code(record.product_code), record.serial_number)
                by_unit[key].append(record)

        matched = 0
        for result in results:
            key = (normalize_product_code(result.product_code), result.serial_number)
            for record in by_unit.get(key, []):
                record.line_status = normalize_status_code(result.status_code)
                record.notified_at = at
                matched += 1

        units = [r for r in shipment.records if r.serial_number is not None]
        all_ok = bool(units) and all(r.line_status in SUCCESS_CODES for r in units)
        status = NotificationStatus.OK if all_ok else NotificationStatus.NOK
        shipment.header.notification_status = status
        shipment.header.notified_at = at

        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to store verification for shipment %s", transfer_id)
            raise StoreError(f"Failed to store verification for shipment {transfer_id}") from exc

        logger.info(
            "Verification stored for shipment %s: %d/%d units matched, status %s",
            transfer_id, matched, len(units), status.value,
        )
        return status
