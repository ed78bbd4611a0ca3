"""
Flattening of a transfer manifest's container tree.

A manifest nests carriers (pallet → case → bundle) that hold product lists,
each listing one or more serial numbers. The tree is flattened into
HierarchyRecord rows that only keep (container_label, parent_container_label)
links, so the hierarchy survives a flat table and can be rebuilt by anyone
reading it.
"""

import logging

from pharmatrace.models.models import HierarchyRecord
from pharmatrace.schemas.schemas import ManifestNode, ManifestUnitGroup

logger = logging.getLogger(__name__)


def _container_record(node: ManifestNode, parent_label: str | None, level: int) -> HierarchyRecord:
    return HierarchyRecord(
        container_label=node.container_label,
        parent_container_label=parent_label,
        container_type=node.container_type,
        container_level=level,
        product_code=None,
        serial_number=None,
    )


def _unit_records(
    node: ManifestNode,
    group: ManifestUnitGroup,
    parent_label: str | None,
    level: int,
) -> list[HierarchyRecord]:
    records = []
    for serial in group.serial_numbers:
        serial = (serial or "").strip()
        if not serial:
            continue
        records.append(
            HierarchyRecord(
                container_label=node.container_label,
                parent_container_label=parent_label,
                container_type=None,
                container_level=level,
                product_code=group.product_code,
                serial_number=serial,
                lot_number=group.lot_number,
                expiration_date=group.expiration_date,
                production_date=group.production_date,
                purchase_order_number=group.purchase_order_number,
            )
        )
    return records


def _walk(
    node: ManifestNode,
    parent_label: str | None,
    level: int,
    out: list[HierarchyRecord],
) -> None:
    if node.container_label:
        out.append(_container_record(node, parent_label, level))

    for group in node.unit_groups:
        out.extend(_unit_records(node, group, parent_label, level))

    for child in node.children:
        _walk(child, node.container_label, level + 1, out)


def flatten(root_containers: list[ManifestNode], *, transfer_id: int | None = None) -> list[HierarchyRecord]:
    """Flatten manifest nodes depth-first, starting at level 0.

    Container rows have serial_number=None; unit rows carry the label of the
    node they sit in (None when directly at the shipment root) and that
    node's parent label. The returned records are transient; pass
    ``transfer_id`` to stamp them for a given shipment.
    """
    records: list[HierarchyRecord] = []
    for node in root_containers:
        _walk(node, None, 0, records)

    if transfer_id is not None:
        for record in records:
            record.transfer_id = transfer_id

    logger.debug("Flattened manifest into %d records", len(records))
    return records


def count_contents(records: list[HierarchyRecord]) -> tuple[int, int]:
    """Return (item_count, unit_count): distinct product codes and units."""
    units = [r for r in records if r.serial_number is not None]
    product_codes = {r.product_code for r in units if r.product_code}
    return len(product_codes), len(units)
