import enum

from sqlalchemy import (
    BigInteger,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from pharmatrace.core.database import Base

# SQLite only autoincrements INTEGER PRIMARY KEY columns
SurrogateKey = BigInteger().with_variant(Integer, "sqlite")


# ── Enums ──────────────────────────────────────────────────────────────────


class NotificationStatus(str, enum.Enum):
    OK = "OK"
    NOK = "NOK"


# ── Inbound shipments ──────────────────────────────────────────────────────


class ShipmentHeader(Base):
    __tablename__ = "shipment_headers"

    transfer_id = Column(BigInteger, primary_key=True, autoincrement=False)
    document_number = Column(String(35))
    document_date = Column(Date)
    source_location_id = Column(String(20))  # sender GLN
    destination_location_id = Column(String(20))  # receiver GLN
    action_type = Column(String(10))
    ship_to_id = Column(String(20))
    note = Column(Text)
    format_version = Column(String(10))
    item_count = Column(Integer, nullable=False, default=0)  # distinct product codes
    unit_count = Column(Integer, nullable=False, default=0)  # serialized units
    notification_status = Column(
        Enum(NotificationStatus, values_callable=lambda e: [x.value for x in e]),
        nullable=True,
    )
    notified_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String(35), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    records = relationship(
        "HierarchyRecord",
        back_populates="shipment",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class HierarchyRecord(Base):
    """One row per container node and one per serialized unit.

    ``serial_number IS NULL`` marks a container row.
    """

    __tablename__ = "hierarchy_records"
    __table_args__ = (
        Index("ix_hierarchy_transfer_label", "transfer_id", "container_label"),
        Index("ix_hierarchy_transfer_parent", "transfer_id", "parent_container_label"),
        Index("ix_hierarchy_label", "container_label"),
    )

    id = Column(SurrogateKey, primary_key=True, autoincrement=True)
    transfer_id = Column(
        BigInteger,
        ForeignKey("shipment_headers.transfer_id", ondelete="CASCADE"),
        nullable=False,
    )
    container_label = Column(String(40), nullable=True)
    parent_container_label = Column(String(40), nullable=True)
    container_type = Column(String(10), nullable=True)  # e.g. PALLET, CASE
    container_level = Column(Integer, nullable=False, default=0)
    product_code = Column(String(14), nullable=True)
    serial_number = Column(String(40), nullable=True)
    lot_number = Column(String(40), nullable=True)
    expiration_date = Column(Date, nullable=True)
    production_date = Column(Date, nullable=True)
    purchase_order_number = Column(String(40), nullable=True)
    line_status = Column(String(10), nullable=True)  # per-unit notification code
    notified_at = Column(DateTime(timezone=True), nullable=True)

    shipment = relationship("ShipmentHeader", back_populates="records")

    @property
    def is_container(self) -> bool:
        return self.serial_number is None


# ── Per-document scanning ──────────────────────────────────────────────────


class ScanScope(Base):
    """Lockable row for one document line; scans for a line serialize on it."""

    __tablename__ = "scan_scopes"
    __table_args__ = (
        UniqueConstraint("document_id", "line_item_id", name="uq_scan_scope"),
    )

    id = Column(SurrogateKey, primary_key=True, autoincrement=True)
    document_id = Column(String(60), nullable=False)
    line_item_id = Column(String(40), nullable=False)
    product_code = Column(String(14), nullable=True)
    expected_quantity = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ScanRecord(Base):
    __tablename__ = "scan_records"
    __table_args__ = (
        UniqueConstraint("document_id", "line_item_id", "serial_number", name="uq_scan_serial"),
        Index("ix_scan_records_scope", "document_id", "line_item_id"),
        Index("ix_scan_records_container", "document_id", "container_label"),
    )

    id = Column(SurrogateKey, primary_key=True, autoincrement=True)
    document_id = Column(String(60), nullable=False)
    line_item_id = Column(String(40), nullable=False)
    serial_number = Column(String(40), nullable=False)
    product_code = Column(String(14), nullable=False)
    lot_number = Column(String(40), nullable=True)
    expiry_raw = Column(String(6), nullable=True)  # YYMMDD as scanned
    expiration_date = Column(Date, nullable=True)
    container_label = Column(String(40), nullable=True)
    container_type = Column(String(10), nullable=True)
    quantity = Column(Integer, nullable=False, default=1, server_default="1")
    recorded_by = Column(String(35), nullable=True)
    recorded_at = Column(DateTime(timezone=True), server_default=func.now())
