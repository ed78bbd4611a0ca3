"""Tests for manifest validation and flattening."""

from datetime import date

from pharmatrace.schemas.schemas import ManifestIn, ManifestNode
from pharmatrace.services.manifest_parser import count_contents, flatten

from conftest import PRODUCT_A, PRODUCT_B, sample_manifest


def _records():
    return flatten(ManifestIn.model_validate(sample_manifest()).carriers)


def _by_serial(records):
    return {r.serial_number: r for r in records if r.serial_number is not None}


class TestManifestValidation:
    def test_aliases(self):
        manifest = ManifestIn.model_validate(sample_manifest())
        assert manifest.transfer_id == 1001
        assert manifest.source_location_id == "8680000000001"
        assert manifest.document_date == date(2026, 10, 1)
        assert manifest.carriers[0].container_label == "P001"
        assert len(manifest.carriers[0].children) == 2

    def test_single_serial_becomes_list(self):
        manifest = ManifestIn.model_validate(sample_manifest())
        group = manifest.carriers[0].children[1].unit_groups[1]
        assert group.serial_numbers == ["SX0001"]

    def test_blank_attributes_are_none(self):
        node = ManifestNode.model_validate({
            "carrierLabel": " ",
            "productList": [{"GTIN": PRODUCT_A, "expirationDate": "", "serialNumber": ["A1"]}],
        })
        assert node.container_label is None
        assert node.unit_groups[0].expiration_date is None


class TestFlatten:
    def test_record_counts(self):
        records = _records()
        containers = [r for r in records if r.serial_number is None]
        units = [r for r in records if r.serial_number is not None]
        assert len(containers) == 3
        assert len(units) == 7

    def test_container_rows(self):
        containers = {r.container_label: r for r in _records() if r.serial_number is None}
        pallet = containers["P001"]
        assert pallet.parent_container_label is None
        assert pallet.container_level == 0
        assert pallet.container_type == "P"
        assert pallet.product_code is None

        case = containers["P001-C001"]
        assert case.parent_container_label == "P001"
        assert case.container_level == 1
        assert case.container_type == "C"

    def test_unit_rows_carry_container_and_parent(self):
        units = _by_serial(_records())
        unit = units["S0001"]
        assert unit.container_label == "P001-C001"
        assert unit.parent_container_label == "P001"
        assert unit.container_level == 1
        assert unit.product_code == PRODUCT_A
        assert unit.lot_number == "LA1"
        assert unit.expiration_date == date(2027, 11, 30)
        assert unit.production_date == date(2024, 11, 30)
        assert unit.purchase_order_number == "PO-1"

    def test_unit_directly_in_pallet(self):
        unit = _by_serial(_records())["SX0002"]
        assert unit.container_label == "P001"
        assert unit.parent_container_label is None
        assert unit.container_level == 0
        assert unit.product_code == PRODUCT_B

    def test_units_without_container(self):
        node = ManifestNode.model_validate({
            "productList": [{"GTIN": PRODUCT_A, "serialNumber": ["A1", "A2"]}],
            "carrier": [{"carrierLabel": "C9", "productList": [{"GTIN": PRODUCT_A, "serialNumber": "A3"}]}],
        })
        records = flatten([node])
        units = _by_serial(records)
        assert units["A1"].container_label is None
        assert units["A1"].parent_container_label is None
        assert units["A3"].container_label == "C9"
        assert units["A3"].parent_container_label is None
        assert units["A3"].container_level == 1
        assert len([r for r in records if r.serial_number is None]) == 1

    def test_blank_serials_skipped(self):
        node = ManifestNode.model_validate({
            "carrierLabel": "C1",
            "productList": [{"GTIN": PRODUCT_A, "serialNumber": ["A1", " ", ""]}],
        })
        assert len(flatten([node])) == 2

    def test_transfer_id_stamped(self):
        manifest = ManifestIn.model_validate(sample_manifest())
        records = flatten(manifest.carriers, transfer_id=1001)
        assert {r.transfer_id for r in records} == {1001}

    def test_empty_manifest(self):
        assert flatten([]) == []


class TestCountContents:
    def test_counts(self):
        assert count_contents(_records()) == (2, 7)
