"""
Shared fixtures: in-memory backends, principals and application drafts
"""

import pytest
from datetime import date, timedelta

from green_finance.audit import UserLogTrail
from green_finance.documents import Document, DocumentType, InMemoryBlobStore
from green_finance.identity import Principal, Role
from green_finance.loans import ApplicationDraft, LoanLifecycleEngine
from green_finance.storage import InMemoryStorage


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def user_log(storage):
    return UserLogTrail(storage)


@pytest.fixture
def engine(storage, blob_store, user_log):
    return LoanLifecycleEngine(storage, blob_store, user_log)


@pytest.fixture
def admin():
    return Principal(id="admin-1", email="admin@greenfinance.co.za", role=Role.ADMIN, confirmed=True)


@pytest.fixture
def applicant():
    return Principal(id="user-1", email="thandi@example.com", role=Role.STANDARD_USER, confirmed=True)


def make_draft(**overrides) -> ApplicationDraft:
    today = date.today()
    values = dict(
        name="Thandi Mokoena",
        email="thandi@example.com",
        phone="082 555 1234",
        id_number="9001015009087",
        gender="female",
        dob=date(1990, 1, 1),
        address="12 Jacaranda Street, Pretoria",
        amount="1000",
        bank="Capitec",
        account_number="1234567890",
        purpose="Stock for spaza shop",
        due_date=today + timedelta(days=30),
    )
    values.update(overrides)
    return ApplicationDraft(**values)


def make_documents(include_income: bool = True):
    documents = {
        DocumentType.ID_DOCUMENT: Document("id.pdf", b"%PDF-id", "application/pdf"),
        DocumentType.BANK_STATEMENT: Document("statement.pdf", b"%PDF-statement", "application/pdf"),
    }
    if include_income:
        documents[DocumentType.PROOF_OF_INCOME] = Document("payslip.png", b"\x89PNG", "image/png")
    return documents


@pytest.fixture
def draft_factory():
    return make_draft


@pytest.fixture
def documents_factory():
    return make_documents
