from __future__ import annotations

from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from punchsync.models import Employee


class EmployeeRegistry(Protocol):
    def is_active_employee(self, employee_code: str) -> bool: ...

    def is_biometric_exempt(self, employee_code: str) -> bool: ...


class DbEmployeeRegistry:
    """Registry backed by the local ``employees`` mirror.

    Codes that are not mirrored yet count as active and not exempt, so a
    missing master-data row never hides a punch.
    """

    def __init__(self, db: Session) -> None:
        self.db = db
        self._cache: dict[str, Employee | None] = {}

    def _lookup(self, employee_code: str) -> Employee | None:
        if employee_code not in self._cache:
            self._cache[employee_code] = self.db.scalar(
                select(Employee).where(Employee.employee_code == employee_code)
            )
        return self._cache[employee_code]

    def is_active_employee(self, employee_code: str) -> bool:
        employee = self._lookup(employee_code)
        return True if employee is None else bool(employee.is_active)

    def is_biometric_exempt(self, employee_code: str) -> bool:
        employee = self._lookup(employee_code)
        return False if employee is None else bool(employee.is_biometric_exempt)


def skip_reason(registry: EmployeeRegistry, employee_code: str) -> str | None:
    if not registry.is_active_employee(employee_code):
        return "inactive_employee"
    if registry.is_biometric_exempt(employee_code):
        return "biometric_exempt"
    return None
