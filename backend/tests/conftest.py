"""
Shared fixtures for the legacy sync tests.

Provides an in-memory stand-in for the motor database (collections, cursors,
unique indexes, sessions and transactions) plus a seeded canonical directory.
"""

import copy
from typing import Any, Dict, List, Optional

import pytest
from pymongo.errors import DuplicateKeyError


COMPANY_ID = "0b9c5b1e-3f7a-4c52-9d7e-2a1f6e8c4d10"
OTHER_COMPANY_ID = "7d2e4f60-1a3b-4c5d-8e9f-0a1b2c3d4e5f"
ACTOR_USER_ID = "user-actor"

ENGINEERING_DEPT_ID = "5f0f7a8e-6c1d-4b7e-9a3c-1e2d3c4b5a60"
FINANCE_DEPT_ID = "8a1b2c3d-4e5f-4a6b-8c7d-9e0f1a2b3c4d"
WAREHOUSE_DEPT_ID = "c4d5e6f7-0a1b-4c2d-9e3f-4a5b6c7d8e9f"


# =============================================================================
# FAKE MOTOR
# =============================================================================

def _matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, expected in query.items():
        if key == "$or":
            if not any(_matches(doc, clause) for clause in expected):
                return False
            continue

        actual = doc.get(key)
        if isinstance(expected, dict) and "$in" in expected:
            if actual not in expected["$in"]:
                return False
        elif expected is None:
            if actual is not None:
                return False
        elif actual != expected:
            return False
    return True


def _project(doc: Dict[str, Any], projection: Optional[Dict[str, int]]) -> Dict[str, Any]:
    if not projection:
        return copy.deepcopy(doc)
    included = [key for key, flag in projection.items() if flag and key != "_id"]
    if not included:
        return copy.deepcopy(doc)
    return {key: copy.deepcopy(doc[key]) for key in included if key in doc}


class MockAsyncCursor:
    """Mock async cursor for find()."""

    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs
        self._index = 0

    async def to_list(self, length=None):
        if length is None:
            return list(self._docs)
        return list(self._docs[:length])

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._index >= len(self._docs):
            raise StopAsyncIteration
        doc = self._docs[self._index]
        self._index += 1
        return doc


class MockInsertResult:
    def __init__(self, ids):
        self.inserted_ids = ids
        self.inserted_id = ids[0] if ids else None


class MockAsyncCollection:
    """Mock MongoDB async collection with unique index enforcement."""

    def __init__(self, name: str):
        self.name = name
        self.documents: List[Dict[str, Any]] = []
        self.unique_indexes: List[List[str]] = []
        self.partial_filters: Dict[tuple, Dict[str, Any]] = {}
        self.fail_with: Optional[Exception] = None

    def seed(self, docs: List[Dict[str, Any]]) -> None:
        """Insert documents directly, bypassing indexes and sessions."""
        self.documents.extend(copy.deepcopy(docs))

    async def create_index(self, keys, unique=False, **kwargs):
        fields = [keys] if isinstance(keys, str) else [field for field, _ in keys]
        if unique and fields not in self.unique_indexes:
            self.unique_indexes.append(fields)
            if "partialFilterExpression" in kwargs:
                self.partial_filters[tuple(fields)] = kwargs["partialFilterExpression"]
        return "_".join(fields)

    def find(self, query=None, projection=None):
        docs = [_project(doc, projection) for doc in self.documents if _matches(doc, query or {})]
        return MockAsyncCursor(docs)

    async def find_one(self, query=None, projection=None):
        for doc in self.documents:
            if _matches(doc, query or {}):
                return _project(doc, projection)
        return None

    async def count_documents(self, query):
        return sum(1 for doc in self.documents if _matches(doc, query))

    def _check_unique(self, doc: Dict[str, Any]) -> None:
        for fields in self.unique_indexes:
            partial = self.partial_filters.get(tuple(fields))
            if partial and any(not isinstance(doc.get(field), str) for field in partial):
                continue
            key = tuple(doc.get(field) for field in fields)
            for existing in self.documents:
                if tuple(existing.get(field) for field in fields) == key:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {fields}")

    async def insert_one(self, doc, session=None):
        result = await self.insert_many([doc], session=session)
        return MockInsertResult(result.inserted_ids)

    async def insert_many(self, docs, session=None):
        if self.fail_with is not None:
            raise self.fail_with
        for doc in docs:
            self._check_unique(doc)
            stored = copy.deepcopy(doc)
            self.documents.append(stored)
            if session is not None:
                session.record_insert(self, stored)
        return MockInsertResult([doc.get("id") for doc in docs])


class MockTransaction:
    def __init__(self, session: "MockSession"):
        self.session = session

    async def __aenter__(self):
        self.session.in_transaction = True
        self.session.inserted = []
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.session.in_transaction = False
        if exc_type is not None:
            self.session.rollback()
            self.session.client.aborted_transactions += 1
        else:
            self.session.client.committed_transactions += 1
        return False


class MockSession:
    def __init__(self, client: "MockMotorClient"):
        self.client = client
        self.in_transaction = False
        self.inserted = []

    def record_insert(self, collection: MockAsyncCollection, doc: Dict[str, Any]) -> None:
        if self.in_transaction:
            self.inserted.append((collection, doc))

    def rollback(self) -> None:
        for collection, doc in reversed(self.inserted):
            collection.documents.remove(doc)
        self.inserted = []

    def start_transaction(self):
        return MockTransaction(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class MockMotorClient:
    def __init__(self):
        self.committed_transactions = 0
        self.aborted_transactions = 0

    async def start_session(self):
        return MockSession(self)


class MockDatabase:
    """Mock motor database: attribute or item access yields a collection."""

    def __init__(self):
        self.client = MockMotorClient()
        self._collections: Dict[str, MockAsyncCollection] = {}

    def __getattr__(self, name: str) -> MockAsyncCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def __getitem__(self, name: str) -> MockAsyncCollection:
        if name not in self._collections:
            self._collections[name] = MockAsyncCollection(name)
        return self._collections[name]


# =============================================================================
# DIRECTORY
# =============================================================================

def _user(user_id, first_name, last_name, is_active=True):
    return {"id": user_id, "first_name": first_name, "last_name": last_name, "is_active": is_active}


def _employee(employee_id, employee_number, user_id, first_name, last_name,
              department_id=ENGINEERING_DEPT_ID, company_id=COMPANY_ID, **extra):
    doc = {
        "id": employee_id,
        "company_id": company_id,
        "user_id": user_id,
        "employee_number": employee_number,
        "first_name": first_name,
        "last_name": last_name,
        "department_id": department_id,
    }
    doc.update(extra)
    return doc


def seed_directory(db: MockDatabase) -> None:
    """
    Canonical directory used by most tests.

    E-100 Maria Santos   requester, user-req, Engineering
    E-200 Paolo Reyes    reviewer, user-rev
    E-300 Ana Cruz       budget approver, user-bud
    E-400 Jose Garcia    recommending approver, user-rec
    E-500 Liza Ramos     final approver, user-fin
    E-600 Carlo Lim      purchaser (serves/processes), user-pur
    E-900 Ben Tan        requester without a linked user
    E-700 x2             duplicated employee number
    """
    db.companies.seed([{"id": COMPANY_ID, "name": "Acme", "is_active": True}])
    db.departments.seed([
        {"id": ENGINEERING_DEPT_ID, "company_id": COMPANY_ID, "code": "ENG", "name": "Engineering", "is_active": True},
        {"id": FINANCE_DEPT_ID, "company_id": COMPANY_ID, "code": "FIN", "name": "Finance", "is_active": True},
        {"id": WAREHOUSE_DEPT_ID, "company_id": COMPANY_ID, "code": "WH1", "name": "Warehouse", "is_active": True},
        {"id": "dept-wh2", "company_id": COMPANY_ID, "code": "WH2", "name": "Warehouse", "is_active": True},
        {"id": "dept-old", "company_id": COMPANY_ID, "code": "OLD", "name": "Old Dept", "is_active": False},
    ])

    users = [
        _user("user-req", "Maria", "Santos"),
        _user("user-rev", "Paolo", "Reyes"),
        _user("user-bud", "Ana", "Cruz"),
        _user("user-rec", "Jose", "Garcia"),
        _user("user-fin", "Liza", "Ramos"),
        _user("user-pur", "Carlo", "Lim"),
        _user("user-dup1", "Rico", "Dela Cruz"),
        _user("user-dup2", "Rico", "Dela Cruz"),
        _user(ACTOR_USER_ID, "Sync", "Admin"),
    ]
    db.users.seed(users)
    db.user_company_access.seed([
        {"user_id": user["id"], "company_id": COMPANY_ID, "is_active": True} for user in users
    ])

    db.employees.seed([
        _employee("emp-req", "E-100", "user-req", "Maria", "Santos"),
        _employee("emp-rev", "E-200", "user-rev", "Paolo", "Reyes"),
        _employee("emp-bud", "E-300", "user-bud", "Ana", "Cruz", department_id=FINANCE_DEPT_ID),
        _employee("emp-rec", "E-400", "user-rec", "Jose", "Garcia"),
        _employee("emp-fin", "E-500", "user-fin", "Liza", "Ramos"),
        _employee("emp-pur", "E-600", "user-pur", "Carlo", "Lim", department_id=WAREHOUSE_DEPT_ID),
        _employee("emp-nouser", "E-900", None, "Ben", "Tan"),
        _employee("emp-dup1", "E-700", "user-dup1", "Rico", "Dela Cruz"),
        _employee("emp-dup2", "E-700", "user-dup2", "Rico", "Dela Cruz"),
        _employee("emp-gone", "E-800", "user-req", "Old", "Record", deleted_at="2023-01-01T00:00:00Z"),
    ])


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def fake_db():
    """Empty mock database."""
    return MockDatabase()


@pytest.fixture
def directory_db():
    """Mock database seeded with the canonical directory."""
    db = MockDatabase()
    seed_directory(db)
    return db


@pytest.fixture
def legacy_row():
    """
    Factory for legacy rows.

    The default row is a fully approved request with Recommending and Final
    stages and two unserved items; keyword arguments replace or add fields,
    and a value of None removes the field.
    """
    def _make(**fields):
        row = {
            "id": "1001",
            "docNo": "MR-2024-0001",
            "status": "FINAL_APPROVED",
            "series": "PO",
            "requestType": "ITEM",
            "requestedByEmployeeId": "E-100",
            "requestedByName": "Maria Santos",
            "departmentCode": "ENG",
            "departmentName": "Engineering",
            "chargeTo": "Engineering",
            "purpose": "Office supplies",
            "datePrepared": "2024-03-01T08:30:00Z",
            "dateRequired": "2024-03-15T00:00:00Z",
            "createdAt": "2024-03-01T08:30:00Z",
            "updatedAt": "2024-03-05T10:00:00Z",
            "recApproverEmployeeId": "E-400",
            "recApproverName": "Jose Garcia",
            "recApprovalStatus": "APPROVED",
            "recApprovalDate": "2024-03-02T09:00:00Z",
            "finalApproverEmployeeId": "E-500",
            "finalApproverName": "Liza Ramos",
            "finalApprovalStatus": "APPROVED",
            "finalApprovalDate": "2024-03-03T09:00:00Z",
            "items": [
                {"id": "li-1", "itemCode": "PAP-A4", "description": "A4 paper", "uom": "ream",
                 "quantity": 10, "unitPrice": 250.5},
                {"id": "li-2", "itemCode": "PEN-BL", "description": "Blue pen", "uom": "box",
                 "quantity": 2, "unitPrice": 120},
            ],
        }
        for key, value in fields.items():
            if value is None:
                row.pop(key, None)
            else:
                row[key] = value
        return row

    return _make
