"""Tests for submitting shipments to the traceability collaborator."""

import pytest
from pydantic import ValidationError

from pharmatrace.core.config import Settings, TraceabilityConfig
from pharmatrace.core.errors import NotFound
from pharmatrace.models.models import NotificationStatus, ShipmentHeader
from pharmatrace.schemas.schemas import ManifestIn
from pharmatrace.services.hierarchy_store import HierarchyStore
from pharmatrace.services.manifest_parser import flatten
from pharmatrace.services.verification import (
    SubmittedUnit,
    VerificationResult,
    pad_product_code,
    verify_shipment,
)


class FakeTraceabilityClient:
    """Answers every unit with ``code`` unless its serial is in ``failing``."""

    def __init__(self, code="00000", failing=()):
        self.code = code
        self.failing = set(failing)
        self.submitted: list[SubmittedUnit] = []
        self.configs: list[TraceabilityConfig] = []

    def verify(self, units, config):
        self.submitted.extend(units)
        self.configs.append(config)
        return [
            VerificationResult(
                product_code=u.product_code,
                serial_number=u.serial_number,
                status_code="00045" if u.serial_number in self.failing else self.code,
            )
            for u in units
        ]


class TestVerifyShipment:
    def test_submits_every_unit_padded(self, store, shipment):
        client = FakeTraceabilityClient()
        verify_shipment(store, client, 1001)

        assert len(client.submitted) == 7
        assert {u.product_code for u in client.submitted} == {"08698978090035", "08690000000011"}
        unit = next(u for u in client.submitted if u.serial_number == "S0001")
        assert unit.lot_number == "LA1"
        assert unit.expiry_raw == "271130"

    def test_all_ok(self, store, db, shipment):
        status = verify_shipment(store, FakeTraceabilityClient(), 1001)
        assert status == NotificationStatus.OK
        assert db.get(ShipmentHeader, 1001).notification_status == NotificationStatus.OK

    def test_success_code_one(self, store, shipment):
        assert verify_shipment(store, FakeTraceabilityClient(code="1"), 1001) == NotificationStatus.OK

    def test_failure_marks_nok(self, store, db, shipment):
        status = verify_shipment(store, FakeTraceabilityClient(failing={"SX0001"}), 1001)
        assert status == NotificationStatus.NOK
        assert db.get(ShipmentHeader, 1001).notification_status == NotificationStatus.NOK

    def test_uses_config_from_store_settings(self, db, shipment):
        settings = Settings(
            _env_file=None,
            DATABASE_URL="sqlite://",
            TRACE_BASE_URL="https://its.test",
            TRACE_GLN="8680000000002",
        )
        client = FakeTraceabilityClient()
        verify_shipment(HierarchyStore(db, settings), client, 1001)

        [config] = client.configs
        assert config.verify_url == "https://its.test/common/app/verify"
        assert config.gln == "8680000000002"

    def test_explicit_config_wins(self, store, shipment):
        client = FakeTraceabilityClient()
        config = TraceabilityConfig(base_url="https://override.test", timeout_seconds=5)
        verify_shipment(store, client, 1001, config=config)
        assert client.configs == [config]

    def test_unknown_shipment(self, store):
        with pytest.raises(NotFound):
            verify_shipment(store, FakeTraceabilityClient(), 4242)

    def test_shipment_without_units(self, store):
        manifest = ManifestIn.model_validate({"transferId": 3001, "carrier": [{"carrierLabel": "EMPTY"}]})
        store.ingest(manifest, flatten(manifest.carriers))
        with pytest.raises(NotFound):
            verify_shipment(store, FakeTraceabilityClient(), 3001)


class TestPadProductCode:
    def test_pads_to_fourteen_digits(self):
        assert pad_product_code("8698978090035") == "08698978090035"
        assert pad_product_code("0008698978090035") == "08698978090035"


class TestTraceabilityConfig:
    def test_built_from_settings(self):
        settings = Settings(
            _env_file=None,
            TRACE_BASE_URL="https://its.test/",
            TRACE_USERNAME="user",
            TRACE_GLN="8680000000001",
        )
        config = settings.traceability()
        assert config.verify_url == "https://its.test/common/app/verify"
        assert config.username == "user"
        assert config.gln == "8680000000001"

    def test_is_immutable(self):
        config = TraceabilityConfig(base_url="https://its.test")
        with pytest.raises(ValidationError):
            config.base_url = "https://other.test"

    def test_reload_builds_a_new_value(self):
        first = Settings(_env_file=None, TRACE_BASE_URL="https://a.test").traceability()
        second = Settings(_env_file=None, TRACE_BASE_URL="https://b.test").traceability()
        assert first.base_url == "https://a.test"
        assert second.base_url == "https://b.test"
