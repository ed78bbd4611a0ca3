"""
Reconciliation of scanned units against a receiving document.

Every check-then-write runs under an exclusive lock on the scan_scopes row of
each (document_id, line_item_id) it touches, so concurrent scans of the same
line cannot both pass the quantity check. Multiple scopes are always locked
in sorted order.
"""

import enum
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Iterable

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from pharmatrace.core.config import Settings
from pharmatrace.core.errors import (
    DuplicateSerial,
    NotFound,
    ProductMismatch,
    QuantityExceeded,
    StoreError,
    TraceError,
)
from pharmatrace.models.models import HierarchyRecord, ScanRecord, ScanScope
from pharmatrace.services import identifier_codec
from pharmatrace.services.hierarchy_store import ContainerContents, HierarchyStore
from pharmatrace.services.identifier_codec import UnitIdentifier, normalize_product_code

logger = logging.getLogger(__name__)


class ScanStatus(str, enum.Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    WRONG_PRODUCT = "wrong_product"
    QUANTITY_EXCEEDED = "quantity_exceeded"
    MALFORMED = "malformed"


@dataclass(frozen=True, order=True)
class LineScope:
    document_id: str
    line_item_id: str


@dataclass
class ScanOutcome:
    status: ScanStatus
    raw: str
    identifier: UnitIdentifier | None = None
    message: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class LineExpectation:
    line_item_id: str
    product_code: str
    expected_quantity: int | None = None


@dataclass
class ContainerReceipt:
    document_id: str
    container_label: str
    transfer_id: int
    line_counts: dict[str, int] = field(default_factory=dict)

    @property
    def saved_count(self) -> int:
        return sum(self.line_counts.values())


@dataclass
class DeletionResult:
    deleted_count: int
    cleared_container_labels: list[str] = field(default_factory=list)
    product_counts: dict[str, int] = field(default_factory=dict)


class ReconciliationEngine:
    def __init__(
        self,
        db: Session,
        store: HierarchyStore | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.store = store or HierarchyStore(db, settings)
        self.min_serial_length = (
            settings.MIN_SERIAL_LENGTH if settings else identifier_codec.MIN_SERIAL_LENGTH
        )
        self.max_serial_length = (
            settings.MAX_SERIAL_LENGTH if settings else identifier_codec.MAX_SERIAL_LENGTH
        )

    # ── Locking ────────────────────────────────────────────────────────────

    def _scope_query(self, scope: LineScope):
        return self.db.query(ScanScope).filter(
            ScanScope.document_id == scope.document_id,
            ScanScope.line_item_id == scope.line_item_id,
        )

    def _ensure_scope(self, scope: LineScope) -> None:
        # Created in its own transaction so the lock below always finds a row
        if self._scope_query(scope).first() is not None:
            return
        self.db.add(ScanScope(document_id=scope.document_id, line_item_id=scope.line_item_id))
        try:
            self.db.commit()
        except IntegrityError:
            # Another writer created it first
            self.db.rollback()

    def lock_scope(self, scope: LineScope) -> ScanScope:
        """Take the exclusive lock for a scope, creating its row on first use.

        Call before any write of the transaction; the lock is held until
        commit or rollback.
        """
        self._ensure_scope(scope)
        return self._scope_query(scope).with_for_update().one()

    def lock_scopes(self, scopes: Iterable[LineScope]) -> dict[LineScope, ScanScope]:
        ordered = sorted(set(scopes))
        for scope in ordered:
            self._ensure_scope(scope)
        return {scope: self._scope_query(scope).with_for_update().one() for scope in ordered}

    # ── Checks ─────────────────────────────────────────────────────────────

    def _records_in(self, scope: LineScope):
        return self.db.query(ScanRecord).filter(
            ScanRecord.document_id == scope.document_id,
            ScanRecord.line_item_id == scope.line_item_id,
        )

    def check_duplicate(self, serial_number: str, scope: LineScope) -> bool:
        """True when the serial number is already recorded in the scope."""
        return (
            self._records_in(scope)
            .filter(ScanRecord.serial_number == serial_number)
            .first()
            is not None
        )

    def recorded_serials(self, scope: LineScope, serial_numbers: Iterable[str]) -> list[str]:
        serial_numbers = list(serial_numbers)
        if not serial_numbers:
            return []
        rows = (
            self._records_in(scope)
            .filter(ScanRecord.serial_number.in_(serial_numbers))
            .with_entities(ScanRecord.serial_number)
            .all()
        )
        return sorted(row.serial_number for row in rows)

    def recorded_quantity(self, scope: LineScope) -> int:
        total = (
            self._records_in(scope)
            .with_entities(func.coalesce(func.sum(ScanRecord.quantity), 0))
            .scalar()
        )
        return int(total or 0)

    def check_quantity(self, scope: LineScope, incoming: int, expected: int | None) -> int:
        """Raise QuantityExceeded if committed + incoming would pass expected.

        Returns the quantity already recorded. An expected quantity of None
        means the line is unbounded.
        """
        already = self.recorded_quantity(scope)
        if expected is not None and already + incoming > expected:
            raise QuantityExceeded(
                already=already,
                incoming=incoming,
                expected=expected,
                line_item_id=scope.line_item_id,
            )
        return already

    # ── Container grouping ─────────────────────────────────────────────────

    @staticmethod
    def _expected_units(contents: ContainerContents, allowed_product_codes: Iterable[str]) -> list[HierarchyRecord]:
        allowed = {normalize_product_code(code) for code in allowed_product_codes}
        allowed.discard("")
        return [u for u in contents.units if normalize_product_code(u.product_code) in allowed]

    def group_container_contents(
        self,
        container_label: str,
        allowed_product_codes: Iterable[str],
    ) -> list[HierarchyRecord]:
        """Units beneath a container whose product is on the allow-list."""
        contents = self.store.get_by_container_label(container_label)
        units = self._expected_units(contents, allowed_product_codes)
        if not units:
            raise NotFound(f"No expected products found in container {container_label}")
        return units

    # ── Writes ─────────────────────────────────────────────────────────────

    def record_scans(
        self,
        scope: LineScope,
        raws: list[str],
        expected_quantity: int | None = None,
        user: str | None = None,
        product_code: str | None = None,
    ) -> list[ScanOutcome]:
        """Decode and record a batch of unit scans for one document line.

        Malformed, wrong-product and duplicate scans are reported per scan.
        Once a line knows its product (passed here or stored by an earlier
        receipt) a scan of any other product is refused. If the remaining
        scans would overshoot the expected quantity, all of them are refused.
        """
        try:
            scope_row = self.lock_scope(scope)
            if expected_quantity is not None:
                scope_row.expected_quantity = expected_quantity
            if product_code and not scope_row.product_code:
                scope_row.product_code = product_code
            expected = scope_row.expected_quantity
            line_product = normalize_product_code(scope_row.product_code)

            outcomes: list[ScanOutcome] = []
            candidates: list[ScanOutcome] = []
            seen: set[str] = set()

            results = identifier_codec.decode_many(
                raws,
                min_serial_length=self.min_serial_length,
                max_serial_length=self.max_serial_length,
            )
            for result in results:
                if not result.ok:
                    outcomes.append(ScanOutcome(
                        status=ScanStatus.MALFORMED,
                        raw=result.raw,
                        message=result.error.message,
                        error_code=result.error.code,
                    ))
                    continue

                scanned_product = result.identifier.normalized_product_code
                if line_product and scanned_product != line_product:
                    error = ProductMismatch(scanned_product, line_product)
                    outcomes.append(ScanOutcome(
                        status=ScanStatus.WRONG_PRODUCT,
                        raw=result.raw,
                        identifier=result.identifier,
                        message=error.message,
                        error_code=error.code,
                    ))
                    continue

                serial = result.identifier.serial_number
                if serial in seen or self.check_duplicate(serial, scope):
                    error = DuplicateSerial([serial])
                    outcomes.append(ScanOutcome(
                        status=ScanStatus.DUPLICATE,
                        raw=result.raw,
                        identifier=result.identifier,
                        message=error.message,
                        error_code=error.code,
                    ))
                    continue

                seen.add(serial)
                outcome = ScanOutcome(status=ScanStatus.ACCEPTED, raw=result.raw, identifier=result.identifier)
                outcomes.append(outcome)
                candidates.append(outcome)

            if candidates:
                try:
                    self.check_quantity(scope, len(candidates), expected)
                except QuantityExceeded as exc:
                    for outcome in candidates:
                        outcome.status = ScanStatus.QUANTITY_EXCEEDED
                        outcome.message = exc.message
                        outcome.error_code = exc.code
                    candidates = []

            for outcome in candidates:
                identifier = outcome.identifier
                self.db.add(ScanRecord(
                    document_id=scope.document_id,
                    line_item_id=scope.line_item_id,
                    serial_number=identifier.serial_number,
                    product_code=identifier.normalized_product_code,
                    lot_number=identifier.lot_number,
                    expiry_raw=identifier.expiry_raw,
                    expiration_date=identifier.expiry_date,
                    quantity=1,
                    recorded_by=user,
                ))

            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to record scans for %s/%s", scope.document_id, scope.line_item_id)
            raise StoreError(f"Failed to record scans for line {scope.line_item_id}") from exc

        counts = Counter(o.status for o in outcomes)
        rejected = len(outcomes) - counts[ScanStatus.ACCEPTED]
        logger.log(
            logging.WARNING if rejected else logging.INFO,
            "Recorded scans for %s/%s: %d accepted, %d duplicate, %d wrong product, "
            "%d over quantity, %d malformed",
            scope.document_id, scope.line_item_id,
            counts[ScanStatus.ACCEPTED], counts[ScanStatus.DUPLICATE],
            counts[ScanStatus.WRONG_PRODUCT], counts[ScanStatus.QUANTITY_EXCEEDED],
            counts[ScanStatus.MALFORMED],
        )
        return outcomes

    def receive_container(
        self,
        document_id: str,
        container_label: str,
        lines: list[LineExpectation],
        user: str | None = None,
    ) -> ContainerReceipt:
        """Record every expected unit of a shipped container in one go.

        Either all units are written or none: a serial already recorded on
        its line raises DuplicateSerial and an overshooting line raises
        QuantityExceeded.
        """
        contents = self.store.get_by_container_label(container_label)
        container_label = contents.container_label

        lines_by_code: dict[str, LineExpectation] = {}
        for line in lines:
            lines_by_code.setdefault(normalize_product_code(line.product_code), line)

        units = self._expected_units(contents, lines_by_code)
        if not units:
            raise NotFound(f"No expected products found in container {container_label}")

        units_by_line: dict[str, list[HierarchyRecord]] = defaultdict(list)
        line_by_id: dict[str, LineExpectation] = {}
        for unit in units:
            line = lines_by_code[normalize_product_code(unit.product_code)]
            units_by_line[line.line_item_id].append(unit)
            line_by_id[line.line_item_id] = line

        container_type = contents.root.container_type
        try:
            scope_rows = self.lock_scopes(LineScope(document_id, line_id) for line_id in units_by_line)

            for scope, scope_row in scope_rows.items():
                line = line_by_id[scope.line_item_id]
                line_units = units_by_line[scope.line_item_id]
                scope_row.product_code = scope_row.product_code or line.product_code
                if line.expected_quantity is not None:
                    scope_row.expected_quantity = line.expected_quantity

                duplicates = self.recorded_serials(scope, (u.serial_number for u in line_units))
                if duplicates:
                    raise DuplicateSerial(
                        duplicates,
                        f"Container {container_label} holds {len(duplicates)} already recorded "
                        f"serial number(s): {', '.join(duplicates[:3])}"
                        + ("..." if len(duplicates) > 3 else ""),
                    )
                self.check_quantity(scope, len(line_units), scope_row.expected_quantity)

            for scope in scope_rows:
                for unit in units_by_line[scope.line_item_id]:
                    self.db.add(ScanRecord(
                        document_id=document_id,
                        line_item_id=scope.line_item_id,
                        serial_number=unit.serial_number,
                        product_code=normalize_product_code(unit.product_code),
                        lot_number=unit.lot_number,
                        expiry_raw=unit.expiration_date.strftime("%y%m%d") if unit.expiration_date else None,
                        expiration_date=unit.expiration_date,
                        container_label=container_label,
                        container_type=container_type,
                        quantity=1,
                        recorded_by=user,
                    ))

            self.db.commit()
        except TraceError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to receive container %s on %s", container_label, document_id)
            raise StoreError(f"Failed to receive container {container_label}") from exc

        receipt = ContainerReceipt(
            document_id=document_id,
            container_label=container_label,
            transfer_id=contents.transfer_id,
            line_counts={line_id: len(line_units) for line_id, line_units in sorted(units_by_line.items())},
        )
        logger.info(
            "Received container %s on %s: %d units across %d lines",
            container_label, document_id, receipt.saved_count, len(receipt.line_counts),
        )
        return receipt

    def delete_scans(self, scope: LineScope, serial_numbers: list[str]) -> DeletionResult:
        """Delete recorded serials from a line.

        A container that loses any of its units is broken up: the remaining
        records of that container in the scope lose their container label and
        type.
        """
        try:
            self.lock_scope(scope)
            rows = (
                self._records_in(scope)
                .filter(ScanRecord.serial_number.in_(serial_numbers))
                .all()
            )
            labels = sorted({r.container_label for r in rows if r.container_label})
            for row in rows:
                self.db.delete(row)
            self.db.flush()

            for label in labels:
                cleared = (
                    self._records_in(scope)
                    .filter(ScanRecord.container_label == label)
                    .update(
                        {ScanRecord.container_label: None, ScanRecord.container_type: None},
                        synchronize_session=False,
                    )
                )
                logger.debug("Cleared container %s from %d remaining records", label, cleared)

            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to delete scans for %s/%s", scope.document_id, scope.line_item_id)
            raise StoreError(f"Failed to delete scans for line {scope.line_item_id}") from exc

        logger.info(
            "Deleted %d scans from %s/%s, broke up %d containers",
            len(rows), scope.document_id, scope.line_item_id, len(labels),
        )
        return DeletionResult(deleted_count=len(rows), cleared_container_labels=labels)

    def _container_lines(self, document_id: str, container_label: str) -> list[str]:
        return [
            row.line_item_id
            for row in self.db.query(ScanRecord.line_item_id)
            .filter(
                ScanRecord.document_id == document_id,
                ScanRecord.container_label == container_label,
            )
            .distinct()
            .all()
        ]

    def delete_container(self, document_id: str, container_label: str) -> DeletionResult:
        """Remove every unit recorded from a container on a document.

        A scanned carrier label (00 + SSCC) matches the SSCC it was recorded
        under.
        """
        container_label = (container_label or "").strip()
        line_ids = self._container_lines(document_id, container_label)
        if not line_ids and identifier_codec.detect_barcode_type(container_label) == "container":
            sscc = identifier_codec.extract_sscc(container_label)
            line_ids = self._container_lines(document_id, sscc)
            if line_ids:
                container_label = sscc
        if not line_ids:
            raise NotFound(f"Container {container_label} not recorded on document {document_id}")

        try:
            self.lock_scopes(LineScope(document_id, line_id) for line_id in line_ids)
            rows = (
                self.db.query(ScanRecord)
                .filter(
                    ScanRecord.document_id == document_id,
                    ScanRecord.container_label == container_label,
                )
                .all()
            )
            product_counts = Counter(normalize_product_code(r.product_code) for r in rows)
            for row in rows:
                self.db.delete(row)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to delete container %s on %s", container_label, document_id)
            raise StoreError(f"Failed to delete container {container_label}") from exc

        logger.info("Deleted container %s from %s: %d units", container_label, document_id, len(rows))
        return DeletionResult(
            deleted_count=len(rows),
            cleared_container_labels=[container_label],
            product_counts=dict(product_counts),
        )
