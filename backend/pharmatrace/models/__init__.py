from pharmatrace.models.models import (
    HierarchyRecord,
    NotificationStatus,
    ScanRecord,
    ScanScope,
    ShipmentHeader,
)

__all__ = [
    "ShipmentHeader",
    "HierarchyRecord",
    "NotificationStatus",
    "ScanScope",
    "ScanRecord",
]
