from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pharmatrace.models.models import NotificationStatus


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


# ── Manifest input ─────────────────────────────────────────────────────────
#
# Field aliases follow the attribute/element names of the transfer XML so a
# decoded package can be validated as-is.


class ManifestUnitGroup(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_code: str | None = Field(default=None, alias="GTIN")
    expiration_date: date | None = Field(default=None, alias="expirationDate")
    production_date: date | None = Field(default=None, alias="productionDate")
    lot_number: str | None = Field(default=None, alias="lotNumber")
    purchase_order_number: str | None = Field(default=None, alias="PONumber")
    serial_numbers: list[str] = Field(default_factory=list, alias="serialNumber")

    @field_validator(
        "product_code", "expiration_date", "production_date", "lot_number", "purchase_order_number",
        mode="before",
    )
    @classmethod
    def _blank_attributes(cls, value):
        return _blank_to_none(value)

    @field_validator("serial_numbers", mode="before")
    @classmethod
    def _listify_serials(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


class ManifestNode(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    container_label: str | None = Field(default=None, alias="carrierLabel")
    container_type: str | None = Field(default=None, alias="containerType")
    unit_groups: list[ManifestUnitGroup] = Field(default_factory=list, alias="productList")
    children: list["ManifestNode"] = Field(default_factory=list, alias="carrier")

    @field_validator("container_label", "container_type", mode="before")
    @classmethod
    def _blank_attributes(cls, value):
        return _blank_to_none(value)


class ShipmentHeaderIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transfer_id: int = Field(alias="transferId")
    document_number: str | None = Field(default=None, alias="documentNumber")
    document_date: date | None = Field(default=None, alias="documentDate")
    source_location_id: str | None = Field(default=None, alias="sourceGLN")
    destination_location_id: str | None = Field(default=None, alias="destinationGLN")
    action_type: str | None = Field(default=None, alias="actionType")
    ship_to_id: str | None = Field(default=None, alias="shipTo")
    note: str | None = None
    format_version: str | None = Field(default=None, alias="version")

    @field_validator(
        "document_number", "document_date", "source_location_id", "destination_location_id",
        "action_type", "ship_to_id", "note", "format_version",
        mode="before",
    )
    @classmethod
    def _blank_attributes(cls, value):
        return _blank_to_none(value)


class ManifestIn(ShipmentHeaderIn):
    carriers: list[ManifestNode] = Field(default_factory=list, alias="carrier")
    created_by: str | None = None


class IngestOut(BaseModel):
    transfer_id: int
    accepted: bool
    record_count: int
    message: str


# ── Hierarchy output ───────────────────────────────────────────────────────


class HierarchyRecordOut(BaseModel):
    transfer_id: int
    container_label: str | None
    parent_container_label: str | None
    container_type: str | None
    container_level: int
    product_code: str | None
    serial_number: str | None
    lot_number: str | None
    expiration_date: date | None
    production_date: date | None
    purchase_order_number: str | None
    line_status: str | None
    notified_at: datetime | None

    class Config:
        from_attributes = True


class ShipmentHeaderOut(BaseModel):
    transfer_id: int
    document_number: str | None
    document_date: date | None
    source_location_id: str | None
    destination_location_id: str | None
    action_type: str | None
    ship_to_id: str | None
    note: str | None
    format_version: str | None
    item_count: int
    unit_count: int
    notification_status: NotificationStatus | None
    notified_at: datetime | None
    created_by: str | None
    created_at: datetime | None

    class Config:
        from_attributes = True


class ShipmentOut(BaseModel):
    header: ShipmentHeaderOut
    records: list[HierarchyRecordOut]


class ContainerNodeOut(BaseModel):
    container_label: str
    parent_container_label: str | None
    container_type: str | None
    container_level: int | None
    transfer_id: int | None
    units: list[HierarchyRecordOut] = []
    children: list["ContainerNodeOut"] = []

    class Config:
        from_attributes = True


class ShipmentTreeOut(BaseModel):
    transfer_id: int
    containers: list[ContainerNodeOut]
    loose_units: list[HierarchyRecordOut]


class ContainerLookupOut(BaseModel):
    container_label: str
    transfer_id: int
    root: HierarchyRecordOut
    unit_count: int
    container_count: int
    records: list[HierarchyRecordOut]
    tree: list[ContainerNodeOut]


# ── Scanning ───────────────────────────────────────────────────────────────


class DecodeRequest(BaseModel):
    barcodes: list[str]


class DecodedOut(BaseModel):
    raw: str
    ok: bool
    product_code: str | None = None
    serial_number: str | None = None
    expiry_raw: str | None = None
    expiration_date: date | None = None
    lot_number: str | None = None
    error_code: str | None = None
    message: str | None = None


class ScanRequest(BaseModel):
    barcodes: list[str]
    expected_quantity: int | None = Field(default=None, ge=0)
    product_code: str | None = None  # product of the line; other products are refused
    recorded_by: str | None = None


class ScanOutcomeOut(BaseModel):
    raw: str
    status: str
    serial_number: str | None = None
    product_code: str | None = None
    error_code: str | None = None
    message: str | None = None


class ScanBatchOut(BaseModel):
    document_id: str
    line_item_id: str
    accepted_count: int
    recorded_quantity: int
    outcomes: list[ScanOutcomeOut]


class LineExpectationIn(BaseModel):
    line_item_id: str
    product_code: str
    expected_quantity: int | None = Field(default=None, ge=0)


class ContainerReceiveRequest(BaseModel):
    container_label: str
    lines: list[LineExpectationIn]
    recorded_by: str | None = None


class ContainerReceiveOut(BaseModel):
    document_id: str
    container_label: str
    transfer_id: int
    saved_count: int
    line_counts: dict[str, int]


class DeleteScansRequest(BaseModel):
    serial_numbers: list[str]


class DeleteScansOut(BaseModel):
    deleted_count: int
    cleared_container_labels: list[str]
    product_counts: dict[str, int] = {}
