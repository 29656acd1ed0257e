"""
Legacy Material Request Sync - Identity Resolvers

Each resolver loads an index from the canonical directory once per run and then
answers lookups from memory. A failed lookup always carries a reason code so
"not found" and "ambiguous" can be told apart in the sync report.

Directory collections read:
- employees:            id, company_id, user_id, employee_number, first_name,
                        last_name, department_id, deleted_at
- users:                id, first_name, last_name, is_active
- user_company_access:  user_id, company_id, is_active
- companies:            id, is_active
- departments:          id, company_id, code, name, is_active
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar

from .fields import Identity, name_key, normalize_text

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# REASON CODES
# =============================================================================

REQUESTER_EMPLOYEE_NUMBER_MISSING = "REQUESTER_EMPLOYEE_NUMBER_MISSING"
REQUESTER_NOT_FOUND = "REQUESTER_NOT_FOUND"
AMBIGUOUS_REQUESTER_EMPLOYEE_NUMBER_MATCH = "AMBIGUOUS_REQUESTER_EMPLOYEE_NUMBER_MATCH"

APPROVER_NOT_FOUND = "APPROVER_NOT_FOUND"
AMBIGUOUS_APPROVER_EMPLOYEE_NUMBER_MATCH = "AMBIGUOUS_APPROVER_EMPLOYEE_NUMBER_MATCH"
AMBIGUOUS_APPROVER_NAME_MATCH = "AMBIGUOUS_APPROVER_NAME_MATCH"

DEPARTMENT_NOT_FOUND = "DEPARTMENT_NOT_FOUND"
AMBIGUOUS_DEPARTMENT_NAME_MATCH = "AMBIGUOUS_DEPARTMENT_NAME_MATCH"


@dataclass
class Resolution(Generic[T]):
    """Outcome of a resolver lookup: a single match, or a reason why not."""
    matched: Optional[T] = None
    reason: Optional[str] = None

    @classmethod
    def found(cls, matched: T) -> "Resolution[T]":
        return cls(matched=matched, reason=None)

    @classmethod
    def failed(cls, reason: str) -> "Resolution[T]":
        return cls(matched=None, reason=reason)


@dataclass
class RequesterEmployee:
    id: str
    user_id: Optional[str]
    employee_number: str
    first_name: str
    last_name: str
    department_id: Optional[str]

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


@dataclass
class ApproverUser:
    user_id: str
    first_name: str
    last_name: str


@dataclass
class Department:
    id: str
    code: str
    name: str


async def _fetch_all(collection, query: Dict[str, Any], projection: Optional[Dict[str, int]] = None) -> List[Dict[str, Any]]:
    cursor = collection.find(query, projection)
    return await cursor.to_list(length=None)


async def _active_company_user_ids(db, company_id: str) -> List[str]:
    """Users holding an active access grant to the company, whose account is active."""
    access_rows = await _fetch_all(
        db.user_company_access,
        {"company_id": company_id, "is_active": True},
        {"user_id": 1, "_id": 0},
    )
    granted_ids = list(dict.fromkeys(row["user_id"] for row in access_rows if row.get("user_id")))
    if not granted_ids:
        return []

    active_users = await _fetch_all(
        db.users,
        {"id": {"$in": granted_ids}, "is_active": True},
        {"id": 1, "_id": 0},
    )
    active_ids = {user["id"] for user in active_users}
    return [user_id for user_id in granted_ids if user_id in active_ids]


# =============================================================================
# REQUESTER RESOLVER
# =============================================================================

class RequesterResolver:
    """
    Resolves a legacy requester to a canonical employee by employee number only.

    In scope: non-deleted employees of the company, plus employees linked to an
    active user that has an active access grant on the (active) company.
    """

    def __init__(self, employees: List[RequesterEmployee]):
        self._by_employee_number: Dict[str, List[RequesterEmployee]] = {}
        for employee in employees:
            key = normalize_text(employee.employee_number)
            if key:
                self._by_employee_number.setdefault(key, []).append(employee)

    @classmethod
    async def build(cls, db, company_id: str) -> "RequesterResolver":
        company = await db.companies.find_one({"id": company_id}, {"_id": 0, "is_active": 1})
        granted_user_ids: List[str] = []
        if company is not None and company.get("is_active"):
            granted_user_ids = await _active_company_user_ids(db, company_id)

        scope: List[Dict[str, Any]] = [{"company_id": company_id}]
        if granted_user_ids:
            scope.append({"user_id": {"$in": granted_user_ids}})

        rows = await _fetch_all(
            db.employees,
            {"deleted_at": None, "$or": scope},
            {"_id": 0, "id": 1, "user_id": 1, "employee_number": 1,
             "first_name": 1, "last_name": 1, "department_id": 1},
        )

        employees = [
            RequesterEmployee(
                id=row["id"],
                user_id=row.get("user_id"),
                employee_number=row.get("employee_number") or "",
                first_name=row.get("first_name") or "",
                last_name=row.get("last_name") or "",
                department_id=row.get("department_id"),
            )
            for row in rows
        ]
        logger.info("Requester index built for company %s: %d employees", company_id, len(employees))
        return cls(employees)

    def resolve(self, identity: Identity) -> Resolution[RequesterEmployee]:
        key = normalize_text(identity.employee_number)
        if not key:
            return Resolution.failed(REQUESTER_EMPLOYEE_NUMBER_MISSING)

        candidates = self._by_employee_number.get(key, [])
        if len(candidates) == 1:
            return Resolution.found(candidates[0])
        if len(candidates) > 1:
            return Resolution.failed(AMBIGUOUS_REQUESTER_EMPLOYEE_NUMBER_MATCH)
        return Resolution.failed(REQUESTER_NOT_FOUND)


# =============================================================================
# APPROVER RESOLVER
# =============================================================================

class ApproverResolver:
    """
    Resolves a legacy approver to a canonical user with workflow access.

    Tier 1 matches the linked employee number. Only when that tier has no
    candidates at all does tier 2 match on the (first name, last name) pair.
    """

    def __init__(
        self,
        users: List[ApproverUser],
        employee_numbers: List[Tuple[str, str]],
    ):
        self._user_by_id: Dict[str, ApproverUser] = {}
        self._user_ids_by_name: Dict[str, List[str]] = {}
        self._user_ids_by_employee_number: Dict[str, List[str]] = {}

        for user in users:
            self._user_by_id[user.user_id] = user
            self._user_ids_by_name.setdefault(name_key(user.first_name, user.last_name), []).append(user.user_id)

        for user_id, employee_number in employee_numbers:
            key = normalize_text(employee_number)
            if not user_id or not key:
                continue
            existing = self._user_ids_by_employee_number.setdefault(key, [])
            if user_id not in existing:
                existing.append(user_id)

    @classmethod
    async def build(cls, db, company_id: str) -> "ApproverResolver":
        user_ids = await _active_company_user_ids(db, company_id)
        if not user_ids:
            logger.info("Approver index built for company %s: 0 users", company_id)
            return cls([], [])

        user_rows = await _fetch_all(
            db.users,
            {"id": {"$in": user_ids}},
            {"_id": 0, "id": 1, "first_name": 1, "last_name": 1},
        )
        employee_rows = await _fetch_all(
            db.employees,
            {"user_id": {"$in": user_ids}, "deleted_at": None},
            {"_id": 0, "user_id": 1, "employee_number": 1},
        )

        users = [
            ApproverUser(
                user_id=row["id"],
                first_name=row.get("first_name") or "",
                last_name=row.get("last_name") or "",
            )
            for row in user_rows
        ]
        employee_numbers = [
            (row.get("user_id"), row.get("employee_number") or "")
            for row in employee_rows
        ]
        logger.info("Approver index built for company %s: %d users", company_id, len(users))
        return cls(users, employee_numbers)

    def _single(self, candidate_ids: List[str]) -> Resolution[ApproverUser]:
        candidate = self._user_by_id.get(candidate_ids[0])
        if candidate is None:
            return Resolution.failed(APPROVER_NOT_FOUND)
        return Resolution.found(candidate)

    def resolve(self, identity: Identity) -> Resolution[ApproverUser]:
        employee_number_key = normalize_text(identity.employee_number)
        if employee_number_key:
            candidate_ids = self._user_ids_by_employee_number.get(employee_number_key, [])
            if len(candidate_ids) == 1:
                return self._single(candidate_ids)
            if len(candidate_ids) > 1:
                return Resolution.failed(AMBIGUOUS_APPROVER_EMPLOYEE_NUMBER_MATCH)

        first_name = normalize_text(identity.first_name)
        last_name = normalize_text(identity.last_name)
        if first_name and last_name:
            candidate_ids = self._user_ids_by_name.get(f"{first_name}|{last_name}", [])
            if len(candidate_ids) == 1:
                return self._single(candidate_ids)
            if len(candidate_ids) > 1:
                return Resolution.failed(AMBIGUOUS_APPROVER_NAME_MATCH)

        return Resolution.failed(APPROVER_NOT_FOUND)


# =============================================================================
# DEPARTMENT RESOLVER
# =============================================================================

class DepartmentResolver:
    """Resolves departments by code, by unique name, or directly by id."""

    def __init__(self, departments: List[Department]):
        self._by_id: Dict[str, Department] = {}
        self._by_code: Dict[str, Department] = {}
        self._by_name: Dict[str, List[Department]] = {}

        for department in departments:
            self._by_id[department.id] = department
            code_key = normalize_text(department.code)
            if code_key:
                self._by_code[code_key] = department
            self._by_name.setdefault(normalize_text(department.name), []).append(department)

    @classmethod
    async def build(cls, db, company_id: str) -> "DepartmentResolver":
        rows = await _fetch_all(
            db.departments,
            {"company_id": company_id, "is_active": True},
            {"_id": 0, "id": 1, "code": 1, "name": 1},
        )
        departments = [
            Department(id=row["id"], code=row.get("code") or "", name=row.get("name") or "")
            for row in rows
        ]
        logger.info("Department index built for company %s: %d departments", company_id, len(departments))
        return cls(departments)

    def resolve(self, department_code: str, department_name: str) -> Resolution[Department]:
        code_key = normalize_text(department_code)
        if code_key and code_key in self._by_code:
            return Resolution.found(self._by_code[code_key])

        name_key_value = normalize_text(department_name)
        if name_key_value:
            candidates = self._by_name.get(name_key_value, [])
            if len(candidates) == 1:
                return Resolution.found(candidates[0])
            if len(candidates) > 1:
                return Resolution.failed(AMBIGUOUS_DEPARTMENT_NAME_MATCH)

        return Resolution.failed(DEPARTMENT_NOT_FOUND)

    def resolve_by_id(self, department_id: str) -> Resolution[Department]:
        matched = self._by_id.get((department_id or "").strip())
        if matched is None:
            return Resolution.failed(DEPARTMENT_NOT_FOUND)
        return Resolution.found(matched)


@dataclass
class Resolvers:
    requester: RequesterResolver
    approver: ApproverResolver
    department: DepartmentResolver


async def build_resolvers(db, company_id: str) -> Resolvers:
    """Build all three indexes concurrently; they are independent reads."""
    requester, approver, department = await asyncio.gather(
        RequesterResolver.build(db, company_id),
        ApproverResolver.build(db, company_id),
        DepartmentResolver.build(db, company_id),
    )
    return Resolvers(requester=requester, approver=approver, department=department)
