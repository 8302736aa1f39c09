import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from .errors import (
    DuplicateRowError,
    InsufficientBalanceError,
    InvalidInputError,
    StudentNotFoundError,
)
from .models import PointOverride, Student, StudentKey
from .storage import LedgerStore, to_row

logger = logging.getLogger(__name__)


class PointsLedger:
    """
    Sole owner of ``students.total_points``.

    Balances only move through ``credit`` and ``debit``, both of which are a
    single bounded adjustment in the store, so concurrent approvals for the
    same student cannot act on a stale balance. ``override_points`` is the
    moderator escape hatch and leaves its own audit record instead.
    """

    def __init__(self, storage: LedgerStore):
        self.storage = storage

    def credit(self, key: StudentKey, amount: int) -> Student:
        if amount < 0:
            raise InvalidInputError(f"Cannot credit a negative amount ({amount})")
        key = _normalize_key(key)

        row = self._adjust_existing(key, amount)
        if row is None:
            try:
                row = self.storage.insert("students", to_row(Student(
                    id=uuid4(),
                    name=key.name,
                    student_group=key.group,
                    total_points=amount,
                )))
                logger.info("Created student %s (%s) with %d points", key.name, key.group, amount)
                return Student(**row)
            except DuplicateRowError:
                # Lost an insert race against another first credit
                row = self._adjust_existing(key, amount)
                if row is None:
                    raise
        logger.info("Credited %d points to %s (%s), balance %d", amount, key.name, key.group, row["total_points"])
        return Student(**row)

    def debit(self, key: StudentKey, amount: int) -> Student:
        if amount < 0:
            raise InvalidInputError(f"Cannot debit a negative amount ({amount})")
        key = _normalize_key(key)

        existing = self._find_row(key)
        if existing is None:
            raise StudentNotFoundError(f"Student {key.name} ({key.group}) not found")

        row = self.storage.adjust("students", existing["id"], "total_points", -amount, minimum=0)
        if row is None:
            current = self.storage.get("students", existing["id"])
            if current is None:
                raise StudentNotFoundError(f"Student {key.name} ({key.group}) not found")
            raise InsufficientBalanceError(
                f"Student {key.name} ({key.group}) has {current['total_points']} points, {amount} required"
            )
        logger.info("Debited %d points from %s (%s), balance %d", amount, key.name, key.group, row["total_points"])
        return Student(**row)

    def get_student(self, student_id: UUID) -> Student:
        row = self.storage.get("students", student_id)
        if not row:
            raise StudentNotFoundError(f"Student {student_id} not found")
        return Student(**row)

    def find_student(self, key: StudentKey) -> Optional[Student]:
        row = self._find_row(_normalize_key(key))
        return Student(**row) if row else None

    def list_students(self) -> list[Student]:
        rows = self.storage.select("students", order_by="total_points", descending=True)
        return [Student(**r) for r in rows]

    def override_points(
        self,
        student_id: UUID,
        new_total: int,
        performed_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> tuple[Student, PointOverride]:
        if new_total < 0:
            raise InvalidInputError(f"Balance cannot be set below zero ({new_total})")

        current = self.get_student(student_id)
        row = self.storage.update(
            "students",
            student_id,
            {"total_points": new_total},
            expect={"total_points": current.total_points},
        )
        if row is None:
            # Balance moved under us; report against the value actually replaced
            current = self.get_student(student_id)
            row = self.storage.update("students", student_id, {"total_points": new_total})
            if row is None:
                raise StudentNotFoundError(f"Student {student_id} not found")

        override = PointOverride(
            id=uuid4(),
            student_id=student_id,
            previous_total=current.total_points,
            new_total=new_total,
            performed_by=performed_by,
            reason=reason,
            created_at=datetime.now(timezone.utc),
        )
        self.storage.insert("point_overrides", to_row(override))
        logger.warning(
            "Points override for %s (%s): %d -> %d by %s",
            current.name, current.student_group, current.total_points, new_total, performed_by or "unknown",
        )
        return Student(**row), override

    def list_overrides(self, student_id: Optional[UUID] = None) -> list[PointOverride]:
        filters = {"student_id": student_id} if student_id else None
        rows = self.storage.select("point_overrides", filters, order_by="created_at", descending=True)
        return [PointOverride(**r) for r in rows]

    def delete_student(self, student_id: UUID) -> None:
        if not self.storage.delete("students", student_id):
            raise StudentNotFoundError(f"Student {student_id} not found")
        logger.info("Deleted student %s", student_id)

    def _find_row(self, key: StudentKey) -> Optional[dict]:
        return self.storage.single("students", name=key.name, student_group=key.group)

    def _adjust_existing(self, key: StudentKey, amount: int) -> Optional[dict]:
        existing = self._find_row(key)
        if existing is None:
            return None
        return self.storage.adjust("students", existing["id"], "total_points", amount)


def _normalize_key(key: StudentKey) -> StudentKey:
    name, group = (part.strip() if part else "" for part in key)
    if not name or not group:
        raise InvalidInputError("Student name and group are required")
    return StudentKey(name, group)
