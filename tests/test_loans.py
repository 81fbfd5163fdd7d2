"""
Test suite for the loan lifecycle module

Tests the total return calculation, application validation and submission,
and the approve/reject transitions between the three loan collections,
including partial failures and racing decisions.
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta

from green_finance.documents import Document, DocumentType, InMemoryBlobStore
from green_finance.errors import (
    AuthorizationError, LoanNotFoundError, PartialTransitionError,
    PersistenceError, StorageError, ValidationError
)
from green_finance.identity import Principal, Role
from green_finance.loans import (
    APPROVED_COLLECTION, PENDING_COLLECTION, REJECTED_COLLECTION,
    ApprovedLoan, LoanLifecycleEngine, LoanRecord, LoanState, RejectedLoan,
    aggregate_revenue, compute_total_return, due_status, month_compare, validate_draft
)
from green_finance.money import format_rand
from green_finance.storage import InMemoryStorage
from green_finance.audit import UserAction, UserLogTrail


class RecordingStorage(InMemoryStorage):
    """In-memory storage that records every gateway call"""

    def __init__(self):
        super().__init__()
        self.calls = []

    def insert(self, collection, record):
        self.calls.append(('insert', collection))
        return super().insert(collection, record)

    def update(self, collection, record_id, patch):
        self.calls.append(('update', collection))
        return super().update(collection, record_id, patch)

    def delete(self, collection, record_id):
        self.calls.append(('delete', collection))
        return super().delete(collection, record_id)

    def get(self, collection, record_id):
        self.calls.append(('get', collection))
        return super().get(collection, record_id)


class FlakyStorage(InMemoryStorage):
    """In-memory storage whose deletes or inserts can be made to fail"""

    def __init__(self):
        super().__init__()
        self.fail_delete_from = None
        self.fail_insert_into = None
        self.before_insert = None

    def insert(self, collection, record):
        hook, self.before_insert = self.before_insert, None
        if hook:
            hook()
        if collection == self.fail_insert_into:
            raise PersistenceError(f"Insert into {collection} failed: connection reset")
        return super().insert(collection, record)

    def delete(self, collection, record_id):
        if collection == self.fail_delete_from:
            raise PersistenceError(f"Delete from {collection} failed: connection reset")
        return super().delete(collection, record_id)


class FailingBlobStore(InMemoryBlobStore):
    def upload(self, bucket, path, data, content_type=None):
        raise StorageError("bucket unavailable")


class TestTotalReturn:
    """Test the fixed-rate return calculation"""

    def test_thousand_rand(self):
        assert compute_total_return(Decimal('1000')) == Decimal('1399.90')

    def test_five_thousand_rand(self):
        assert compute_total_return(Decimal('5000')) == Decimal('6999.50')

    def test_rounds_half_up_to_cents(self):
        # 0.05 x 1.3999 = 0.069995
        assert compute_total_return(Decimal('0.05')) == Decimal('0.07')
        assert compute_total_return(Decimal('123.45')) == Decimal('172.82')

    def test_accepts_strings_and_ints(self):
        assert compute_total_return("1000") == compute_total_return(1000) == Decimal('1399.90')

    def test_custom_rate(self):
        assert compute_total_return(Decimal('1000'), Decimal('0.25')) == Decimal('1250.00')

    def test_preview_persisted_and_display_agree(self, engine, admin, draft_factory, documents_factory):
        """The preview, stored value and display string come from one calculation"""
        preview = engine.preview_total_return("1000")
        application = engine.submit(draft_factory(amount="1000"), documents_factory())
        approved = engine.approve(application.id, admin)
        stored = engine.get_approved(approved.id)

        assert preview == approved.total_return == stored.total_return == Decimal('1399.90')
        assert stored.display_total_return == format_rand(preview) == "R1399.90"

    def test_preview_rejects_non_positive(self, engine):
        with pytest.raises(ValidationError) as exc_info:
            engine.preview_total_return("0")
        assert 'amount' in exc_info.value.field_errors

        with pytest.raises(ValidationError):
            engine.preview_total_return("abc")

    def test_engine_uses_configured_rate(self, storage, blob_store, user_log):
        engine = LoanLifecycleEngine(storage, blob_store, user_log, interest_rate=Decimal('0.10'))
        assert engine.preview_total_return("1000") == Decimal('1100.00')


class TestValidation:
    """Test application draft validation"""

    def test_valid_draft_has_no_errors(self, draft_factory, documents_factory):
        assert validate_draft(draft_factory(), documents_factory()) == {}

    def test_collects_every_failing_field(self, draft_factory):
        draft = draft_factory(name="A", email="not-an-email", phone="123", amount="-5")
        errors = validate_draft(draft, {})

        assert set(errors) >= {'name', 'email', 'phone', 'amount', 'id_document', 'bank_statement'}
        assert 'proof_of_income' not in errors

    def test_malformed_amounts_are_rejected(self, draft_factory, documents_factory):
        for amount in ("1e5", "abc12", "12abc34", "12 USD"):
            errors = validate_draft(draft_factory(amount=amount), documents_factory())
            assert errors == {'amount': ["Amount must be a positive number"]}, amount

    def test_currency_prefixed_amount_is_accepted(self, draft_factory, documents_factory):
        assert validate_draft(draft_factory(amount="R 1,250.00"), documents_factory()) == {}

    def test_due_date_must_be_in_future(self, draft_factory, documents_factory):
        today = date.today()
        assert 'due_date' in validate_draft(draft_factory(due_date=today), documents_factory())
        assert 'due_date' in validate_draft(
            draft_factory(due_date=today - timedelta(days=1)), documents_factory()
        )

    def test_dates_accept_iso_strings(self, draft_factory, documents_factory):
        due = (date.today() + timedelta(days=10)).isoformat()
        errors = validate_draft(draft_factory(dob="1985-06-15", due_date=due), documents_factory())
        assert errors == {}

    def test_oversized_document(self, draft_factory, documents_factory):
        documents = documents_factory()
        documents[DocumentType.ID_DOCUMENT] = Document("id.pdf", b"x" * 11, "application/pdf")
        errors = validate_draft(draft_factory(), documents, max_document_bytes=10)
        assert 'id_document' in errors

    def test_empty_document(self, draft_factory, documents_factory):
        documents = documents_factory()
        documents[DocumentType.BANK_STATEMENT] = Document("statement.pdf", b"", "application/pdf")
        assert validate_draft(draft_factory(), documents)['bank_statement'] == ["File is empty"]


class TestRecords:

    def test_base_record_is_abstract(self):
        with pytest.raises(TypeError):
            LoanRecord(id="x", name="Thandi Mokoena", email="thandi@example.com", phone="0825551234",
                       id_number="9001015009087", gender="female", dob=date(1990, 1, 1),
                       address="12 Jacaranda Street", amount=Decimal('1000'), bank="Capitec",
                       account_number="1234567890", purpose="Stock", due_date=date(2030, 1, 1))


class TestSubmit:
    """Test loan application submission"""

    def test_submit_creates_pending_with_document_urls(self, engine, storage, draft_factory, documents_factory):
        application = engine.submit(draft_factory(), documents_factory())

        assert application.id
        assert application.state == LoanState.PENDING
        assert application.amount == Decimal('1000.00')
        assert application.missing_documents == []

        stored = engine.get_application(application.id)
        assert stored.email == "thandi@example.com"
        assert stored.id_document_url.startswith("memory://loans/loan-documents/")
        assert f"{application.id}_id_document_" in stored.id_document_url
        assert stored.bank_statement_url.endswith(".pdf")
        assert stored.proof_of_income_url.endswith(".png")

    def test_proof_of_income_is_optional(self, engine, draft_factory, documents_factory):
        application = engine.submit(draft_factory(), documents_factory(include_income=False))
        assert application.proof_of_income_url is None

    def test_records_applicant_and_user_log(self, engine, user_log, applicant, draft_factory, documents_factory):
        application = engine.submit(draft_factory(), documents_factory(), principal=applicant,
                                    device_info="pytest")

        assert application.applicant_id == applicant.id
        entries = user_log.get_entries_for_entity("loan_application", application.id)
        assert entries[0].action == UserAction.LOAN_SUBMITTED
        assert entries[0].device_info == "pytest"

    def test_non_string_fields_are_stored_as_text(self, engine, draft_factory, documents_factory):
        draft = draft_factory(bank=12345, address=1234567, account_number=1234567890)
        application = engine.submit(draft, documents_factory())

        stored = engine.get_application(application.id)
        assert stored.bank == "12345"
        assert stored.address == "1234567"
        assert stored.account_number == "1234567890"

    def test_non_positive_amount_persists_nothing(self, engine, storage, blob_store,
                                                  draft_factory, documents_factory):
        for amount in ("0", "-100"):
            with pytest.raises(ValidationError) as exc_info:
                engine.submit(draft_factory(amount=amount), documents_factory())
            assert 'amount' in exc_info.value.field_errors

        assert storage.count(PENDING_COLLECTION) == 0
        assert len(blob_store) == 0

    def test_past_due_date_persists_nothing(self, engine, storage, draft_factory, documents_factory):
        with pytest.raises(ValidationError) as exc_info:
            engine.submit(draft_factory(due_date=date.today() - timedelta(days=3)), documents_factory())

        assert 'due_date' in exc_info.value.field_errors
        assert storage.count(PENDING_COLLECTION) == 0

    def test_insert_failure_leaves_nothing(self, blob_store, draft_factory, documents_factory):
        storage = FlakyStorage()
        storage.fail_insert_into = PENDING_COLLECTION
        engine = LoanLifecycleEngine(storage, blob_store, UserLogTrail(storage))

        with pytest.raises(PersistenceError) as exc_info:
            engine.submit(draft_factory(), documents_factory())

        assert exc_info.value.application_id is None
        assert len(blob_store) == 0

    def test_upload_failure_keeps_record_for_retry(self, storage, user_log, draft_factory, documents_factory):
        engine = LoanLifecycleEngine(storage, FailingBlobStore(), user_log)

        with pytest.raises(StorageError) as exc_info:
            engine.submit(draft_factory(), documents_factory())

        application_id = exc_info.value.application_id
        application = engine.get_application(application_id)
        assert application is not None
        assert set(application.missing_documents) == {DocumentType.ID_DOCUMENT, DocumentType.BANK_STATEMENT}

        # Retry the uploads against the existing record
        engine.blob_store = InMemoryBlobStore()
        for doc_type, document in documents_factory(include_income=False).items():
            engine.upload_document(application_id, doc_type, document)

        assert engine.get_application(application_id).missing_documents == []

    def test_upload_document_checks_owner(self, engine, applicant, draft_factory, documents_factory):
        application = engine.submit(draft_factory(), documents_factory(), principal=applicant)
        stranger = Principal(id="user-2", email="someone@example.com", role=Role.STANDARD_USER)

        with pytest.raises(AuthorizationError):
            engine.upload_document(application.id, DocumentType.PROOF_OF_INCOME,
                                   Document("new.pdf", b"data"), principal=stranger)

        url = engine.upload_document(application.id, DocumentType.PROOF_OF_INCOME,
                                     Document("new.pdf", b"data"), principal=applicant)
        assert engine.get_application(application.id).proof_of_income_url == url


class TestDecisions:
    """Test approve and reject transitions"""

    @pytest.fixture
    def application(self, engine, draft_factory, documents_factory):
        return engine.submit(draft_factory(), documents_factory())

    def test_approve_moves_record(self, engine, storage, admin, application):
        approved = engine.approve(application.id, admin)

        assert isinstance(approved, ApprovedLoan)
        assert approved.application_id == application.id
        assert approved.decided_by == admin.id
        assert approved.settled is False
        assert engine.get_application(application.id) is None
        assert engine.get_approved(approved.id).name == application.name
        assert storage.count(PENDING_COLLECTION) == 0
        assert storage.count(APPROVED_COLLECTION) == 1

    def test_reject_moves_record(self, engine, storage, admin, application):
        rejected = engine.reject(application.id, admin)

        assert isinstance(rejected, RejectedLoan)
        assert engine.get_application(application.id) is None
        assert engine.get_rejected(rejected.id).amount == Decimal('1000.00')
        assert storage.count(REJECTED_COLLECTION) == 1
        assert storage.count(APPROVED_COLLECTION) == 0

    def test_decision_copies_applicant_fields(self, engine, admin, application):
        approved = engine.approve(application.id, admin)
        assert approved.copied_fields() == application.copied_fields()

    def test_non_admin_cannot_approve_and_nothing_is_touched(self, blob_store, applicant,
                                                             draft_factory, documents_factory):
        storage = RecordingStorage()
        engine = LoanLifecycleEngine(storage, blob_store, UserLogTrail(storage))
        application = engine.submit(draft_factory(), documents_factory())
        storage.calls.clear()

        with pytest.raises(AuthorizationError):
            engine.approve(application.id, applicant)
        with pytest.raises(AuthorizationError):
            engine.reject(application.id, None)

        assert storage.calls == []

    def test_approve_twice_fails_and_counts_revenue_once(self, engine, admin, application):
        engine.approve(application.id, admin)

        with pytest.raises(LoanNotFoundError):
            engine.approve(application.id, admin)
        with pytest.raises(LoanNotFoundError):
            engine.reject(application.id, admin)

        revenue = aggregate_revenue(engine.list_loans(LoanState.APPROVED))
        assert revenue.loan_count == 1
        assert revenue.total_return == Decimal('1399.90')

    def test_unknown_application(self, engine, admin):
        with pytest.raises(LoanNotFoundError):
            engine.approve("missing", admin)

    def test_destination_insert_failure_changes_nothing(self, blob_store, admin,
                                                        draft_factory, documents_factory):
        storage = FlakyStorage()
        engine = LoanLifecycleEngine(storage, blob_store, UserLogTrail(storage))
        application = engine.submit(draft_factory(), documents_factory())
        storage.fail_insert_into = APPROVED_COLLECTION

        with pytest.raises(PersistenceError):
            engine.approve(application.id, admin)

        assert engine.get_application(application.id) is not None
        assert storage.count(APPROVED_COLLECTION) == 0

        # Safe to retry once the store recovers
        storage.fail_insert_into = None
        engine.approve(application.id, admin)
        assert storage.count(APPROVED_COLLECTION) == 1

    def test_decisions_are_logged(self, engine, user_log, admin, application):
        engine.reject(application.id, admin, device_info="admin-browser")
        entries = user_log.get_entries_for_user(admin.id)
        assert entries[-1].action == UserAction.LOAN_REJECTED
        assert entries[-1].entity_id == application.id


class TestPartialTransition:
    """Test recovery when the pending delete fails after the destination insert"""

    @pytest.fixture
    def flaky(self):
        return FlakyStorage()

    @pytest.fixture
    def flaky_engine(self, flaky, blob_store):
        return LoanLifecycleEngine(flaky, blob_store, UserLogTrail(flaky))

    def test_failed_delete_raises_partial_transition(self, flaky, flaky_engine, admin,
                                                     draft_factory, documents_factory):
        application = flaky_engine.submit(draft_factory(), documents_factory())
        flaky.fail_delete_from = PENDING_COLLECTION

        with pytest.raises(PartialTransitionError) as exc_info:
            flaky_engine.approve(application.id, admin)

        error = exc_info.value
        assert error.application_id == application.id
        assert error.destination == APPROVED_COLLECTION
        assert error.record['application_id'] == application.id
        assert flaky.count(APPROVED_COLLECTION) == 1
        assert flaky.count(PENDING_COLLECTION) == 1

    def test_reconcile_removes_pending_without_second_insert(self, flaky, flaky_engine, admin,
                                                             draft_factory, documents_factory):
        application = flaky_engine.submit(draft_factory(), documents_factory())
        flaky.fail_delete_from = PENDING_COLLECTION
        with pytest.raises(PartialTransitionError):
            flaky_engine.approve(application.id, admin)

        flaky.fail_delete_from = None
        assert flaky_engine.reconcile(application.id, admin) is True

        assert flaky.count(PENDING_COLLECTION) == 0
        assert flaky.count(APPROVED_COLLECTION) == 1
        assert flaky_engine.reconcile(application.id, admin) is False

    def test_reconcile_refuses_undecided_application(self, engine, admin, draft_factory, documents_factory):
        application = engine.submit(draft_factory(), documents_factory())

        with pytest.raises(LoanNotFoundError):
            engine.reconcile(application.id, admin)
        assert engine.get_application(application.id) is not None

    def test_reconcile_requires_admin(self, engine, applicant):
        with pytest.raises(AuthorizationError):
            engine.reconcile("any", applicant)

    def test_racing_decision_withdraws_duplicate(self, flaky, flaky_engine, admin,
                                                 draft_factory, documents_factory):
        """A decision that loses the delete race removes its own destination row"""
        application = flaky_engine.submit(draft_factory(), documents_factory())
        winner = {}
        flaky.before_insert = lambda: winner.update(loan=flaky_engine.approve(application.id, admin))

        with pytest.raises(LoanNotFoundError):
            flaky_engine.approve(application.id, admin)

        approved = flaky_engine.list_loans(LoanState.APPROVED)
        assert [loan.id for loan in approved] == [winner['loan'].id]
        assert aggregate_revenue(approved).total_return == Decimal('1399.90')
        assert flaky.count(PENDING_COLLECTION) == 0

    def test_retried_approval_is_not_inserted_twice(self, flaky, flaky_engine, admin,
                                                    draft_factory, documents_factory):
        application = flaky_engine.submit(draft_factory(amount="1000"), documents_factory())
        flaky.fail_delete_from = PENDING_COLLECTION
        with pytest.raises(PartialTransitionError):
            flaky_engine.approve(application.id, admin)

        flaky.fail_delete_from = None
        with pytest.raises(PartialTransitionError) as exc_info:
            flaky_engine.approve(application.id, admin)

        assert exc_info.value.destination == APPROVED_COLLECTION
        revenue = aggregate_revenue(flaky_engine.list_loans(LoanState.APPROVED))
        assert revenue.loan_count == 1
        assert revenue.total_return == Decimal('1399.90')
        assert flaky.count(PENDING_COLLECTION) == 1

    def test_reject_after_partial_approval_is_refused(self, flaky, flaky_engine, admin,
                                                      draft_factory, documents_factory):
        application = flaky_engine.submit(draft_factory(), documents_factory())
        flaky.fail_delete_from = PENDING_COLLECTION
        with pytest.raises(PartialTransitionError):
            flaky_engine.approve(application.id, admin)

        flaky.fail_delete_from = None
        with pytest.raises(PartialTransitionError) as exc_info:
            flaky_engine.reject(application.id, admin)

        assert exc_info.value.destination == APPROVED_COLLECTION
        assert flaky.count(REJECTED_COLLECTION) == 0
        assert flaky.count(APPROVED_COLLECTION) == 1

        assert flaky_engine.reconcile(application.id, admin) is True
        assert flaky.count(PENDING_COLLECTION) == 0


class TestSettleAndReads:
    """Test settlement, listing, search and due dates"""

    def test_settle(self, engine, admin, applicant, draft_factory, documents_factory):
        application = engine.submit(draft_factory(), documents_factory())
        approved = engine.approve(application.id, admin)

        with pytest.raises(AuthorizationError):
            engine.settle(approved.id, applicant)

        settled = engine.settle(approved.id, admin)
        assert settled.settled is True
        assert engine.get_approved(approved.id).settled_at is not None
        # Idempotent
        assert engine.settle(approved.id, admin).settled is True

    def test_settle_unknown_loan(self, engine, admin):
        with pytest.raises(LoanNotFoundError):
            engine.settle("missing", admin)

    def test_list_filter_and_search(self, engine, admin, draft_factory, documents_factory):
        first = engine.submit(draft_factory(name="Sipho Dlamini", email="sipho@example.com"),
                              documents_factory())
        second = engine.submit(draft_factory(name="Lerato Khumalo", email="lerato@example.com"),
                               documents_factory())
        engine.submit(draft_factory(name="Ayanda Nkosi", email="ayanda@example.com"),
                      documents_factory())
        engine.approve(first.id, admin)
        engine.reject(second.id, admin)

        assert len(engine.list_applications()) == 3
        assert [r.name for r in engine.list_applications(LoanState.APPROVED)] == ["Sipho Dlamini"]
        assert [r.name for r in engine.list_applications(LoanState.REJECTED)] == ["Lerato Khumalo"]
        assert [r.name for r in engine.list_applications(LoanState.PENDING)] == ["Ayanda Nkosi"]
        assert [r.name for r in engine.list_applications(search="LERATO")] == ["Lerato Khumalo"]
        assert engine.list_applications(LoanState.PENDING, search="sipho") == []

    def test_find_loan_in_any_state(self, engine, admin, draft_factory, documents_factory):
        application = engine.submit(draft_factory(), documents_factory())
        assert engine.find_loan(application.id).state == LoanState.PENDING

        rejected = engine.reject(application.id, admin)
        assert engine.find_loan(application.id) is None
        assert engine.find_loan(rejected.id).state == LoanState.REJECTED

    def test_loans_for_email(self, engine, admin, draft_factory, documents_factory):
        mine = engine.submit(draft_factory(email="Thandi@Example.com"), documents_factory())
        engine.submit(draft_factory(email="other@example.com"), documents_factory())
        engine.approve(mine.id, admin)

        grouped = engine.loans_for_email("thandi@example.com")
        assert len(grouped[LoanState.APPROVED]) == 1
        assert grouped[LoanState.PENDING] == []

    def test_due_status(self, engine, draft_factory, documents_factory):
        application = engine.submit(draft_factory(), documents_factory())
        today = application.due_date - timedelta(days=5)

        assert due_status(application, today).describe() == "Due in 5 days"
        assert due_status(application, application.due_date).describe() == "Due today"
        overdue = due_status(application, application.due_date + timedelta(days=2))
        assert overdue.overdue
        assert overdue.describe() == "Overdue by 2 days"


class TestEndToEnd:
    """Submit, approve and report revenue"""

    def test_five_thousand_rand_loan(self, engine, admin, draft_factory, documents_factory):
        application = engine.submit(draft_factory(amount="5000"), documents_factory())
        approved = engine.approve(application.id, admin)

        assert approved.total_return == Decimal('6999.50')
        assert engine.get_application(application.id) is None

        revenue = aggregate_revenue(engine.list_loans(LoanState.APPROVED))
        assert revenue.total_return == Decimal('6999.50')
        assert revenue.total_principal == Decimal('5000.00')
        assert revenue.total_interest == Decimal('1999.50')


class TestMonthCompare:
    """Test month-over-month percentage change"""

    def test_zero_previous_is_one_hundred(self):
        assert month_compare(0, 0) == Decimal('100')
        assert month_compare(250, 0) == Decimal('100')

    def test_increase(self):
        assert month_compare(150, 100) == Decimal('50')

    def test_decrease(self):
        assert month_compare(50, 100) == Decimal('-50')

    def test_decimal_inputs(self):
        assert month_compare(Decimal('1399.90'), Decimal('1000')) == Decimal('39.99')
