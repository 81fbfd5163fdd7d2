"""
Loan Lifecycle Module

Handles loan application submission, document upload, the approve/reject
transitions between the pending, approved and rejected collections, and the
fixed-rate return calculation.

A loan lives in exactly one of three collections. A decision copies the
record into the destination collection and only then deletes it from
loan_applications; the insert is never retried blindly.
"""

import re
import time
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timezone, date
from dataclasses import dataclass, fields
from typing import Any, Dict, Iterable, List, Optional, Union
from enum import Enum

from .audit import UserAction, UserLogTrail
from .documents import BlobStore, Document, DocumentType, REQUIRED_DOCUMENTS
from .errors import (
    AuthorizationError, LoanNotFoundError, PartialTransitionError,
    PersistenceError, StorageError, ValidationError
)
from .identity import Principal, require_admin
from .logging_config import get_logger, log_action
from .money import TWO_PLACES, format_rand, quantize_amount, to_decimal
from .storage import StorageInterface, StorageRecord

logger = get_logger("green_finance.loans")

DEFAULT_INTEREST_RATE = Decimal('0.3999')  # 39.99% fixed return
DEFAULT_MAX_DOCUMENT_BYTES = 5 * 1024 * 1024

PENDING_COLLECTION = "loan_applications"
APPROVED_COLLECTION = "approved_loans"
REJECTED_COLLECTION = "rejected_loans"

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class LoanState(Enum):
    """Loan lifecycle states; Approved and Rejected are terminal"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def collection(self) -> str:
        return {
            LoanState.PENDING: PENDING_COLLECTION,
            LoanState.APPROVED: APPROVED_COLLECTION,
            LoanState.REJECTED: REJECTED_COLLECTION,
        }[self]

    @property
    def is_terminal(self) -> bool:
        return self != LoanState.PENDING


def compute_total_return(amount: Union[Decimal, int, str], rate: Decimal = DEFAULT_INTEREST_RATE) -> Decimal:
    """
    Amount owed back on a loan: amount x (1 + rate), rounded half-up to cents

    This is the only return calculation in the system; previews, persisted
    approvals and display formatting all go through it.
    """
    principal = to_decimal(amount)
    return (principal * (Decimal('1') + rate)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


@dataclass
class LoanRecord(StorageRecord, ABC):
    """Applicant and financial fields shared by every loan collection"""
    name: str
    email: str
    phone: str
    id_number: str
    gender: str
    dob: date
    address: str
    amount: Decimal
    bank: str
    account_number: str
    purpose: str
    due_date: date

    state = LoanState.PENDING

    @property
    def display_amount(self) -> str:
        return format_rand(self.amount)

    @property
    @abstractmethod
    def timestamp(self) -> datetime:
        """Time the record entered its current collection"""

    def copied_fields(self) -> Dict[str, Any]:
        """Applicant/financial fields carried across a transition"""
        return {f.name: getattr(self, f.name) for f in fields(LoanRecord) if f.name != 'id'}


@dataclass
class LoanApplication(LoanRecord):
    """Pending loan application"""
    submitted_at: datetime = None
    applicant_id: Optional[str] = None
    id_document_url: Optional[str] = None
    proof_of_income_url: Optional[str] = None
    bank_statement_url: Optional[str] = None

    state = LoanState.PENDING

    @property
    def timestamp(self) -> datetime:
        return self.submitted_at

    @property
    def missing_documents(self) -> List[DocumentType]:
        """Required documents without an uploaded URL"""
        return [d for d in REQUIRED_DOCUMENTS if not getattr(self, d.url_field)]


@dataclass
class ApprovedLoan(LoanRecord):
    """Approved loan with its fixed return amount"""
    application_id: str = ""
    decided_at: datetime = None
    total_return: Decimal = Decimal('0')
    decided_by: Optional[str] = None
    settled: bool = False
    settled_at: Optional[datetime] = None

    state = LoanState.APPROVED

    @property
    def timestamp(self) -> datetime:
        return self.decided_at

    @property
    def display_total_return(self) -> str:
        return format_rand(self.total_return)


@dataclass
class RejectedLoan(LoanRecord):
    """Rejected loan application"""
    application_id: str = ""
    decided_at: datetime = None
    decided_by: Optional[str] = None

    state = LoanState.REJECTED

    @property
    def timestamp(self) -> datetime:
        return self.decided_at


RECORD_TYPES = {
    LoanState.PENDING: LoanApplication,
    LoanState.APPROVED: ApprovedLoan,
    LoanState.REJECTED: RejectedLoan,
}


@dataclass
class ApplicationDraft:
    """Raw applicant input as received from a form"""
    name: str = ""
    email: str = ""
    phone: str = ""
    id_number: str = ""
    gender: str = ""
    dob: Any = None
    address: str = ""
    amount: Any = None
    bank: str = ""
    account_number: str = ""
    purpose: str = ""
    due_date: Any = None


@dataclass
class DueStatus:
    """Repayment countdown for an approved loan"""
    due_date: date
    days_remaining: int

    @property
    def overdue(self) -> bool:
        return self.days_remaining < 0

    def describe(self) -> str:
        if self.days_remaining > 0:
            return f"Due in {self.days_remaining} days"
        if self.days_remaining == 0:
            return "Due today"
        return f"Overdue by {-self.days_remaining} days"


def due_status(loan: LoanRecord, today: Optional[date] = None) -> DueStatus:
    """Days until (or past) a loan's due date"""
    today = today or date.today()
    return DueStatus(due_date=loan.due_date, days_remaining=(loan.due_date - today).days)


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def _min_length(errors: Dict[str, List[str]], name: str, value: Any, minimum: int, message: str) -> None:
    if len(str(value or "").strip()) < minimum:
        errors.setdefault(name, []).append(message)


def validate_draft(
    draft: ApplicationDraft,
    documents: Optional[Dict[DocumentType, Document]] = None,
    today: Optional[date] = None,
    max_document_bytes: int = DEFAULT_MAX_DOCUMENT_BYTES
) -> Dict[str, List[str]]:
    """
    Validate an application draft and its documents

    Returns:
        Mapping of field name to error messages; empty when valid
    """
    today = today or date.today()
    documents = documents or {}
    errors: Dict[str, List[str]] = {}

    _min_length(errors, 'name', draft.name, 2, "Name must be at least 2 characters")
    if not EMAIL_PATTERN.match(str(draft.email or "").strip()):
        errors.setdefault('email', []).append("Please enter a valid email address")
    if len(re.sub(r"\D", "", str(draft.phone or ""))) < 10:
        errors.setdefault('phone', []).append("Phone number must be at least 10 digits")
    _min_length(errors, 'id_number', draft.id_number, 6, "ID number must be at least 6 characters")
    _min_length(errors, 'gender', draft.gender, 1, "Please select a gender")
    _min_length(errors, 'address', draft.address, 5, "Address must be at least 5 characters")
    _min_length(errors, 'bank', draft.bank, 2, "Please enter your bank name")
    _min_length(errors, 'account_number', draft.account_number, 5,
                "Account number must be at least 5 characters")
    _min_length(errors, 'purpose', draft.purpose, 5, "Purpose must be at least 5 characters")

    dob = _parse_date(draft.dob)
    if dob is None:
        errors.setdefault('dob', []).append("Date of birth is required")
    elif dob >= today:
        errors.setdefault('dob', []).append("Date of birth must be in the past")

    try:
        amount = to_decimal(draft.amount)
        if amount <= 0:
            errors.setdefault('amount', []).append("Amount must be a positive number")
    except ValueError:
        errors.setdefault('amount', []).append("Amount must be a positive number")

    due = _parse_date(draft.due_date)
    if due is None:
        errors.setdefault('due_date', []).append("Due date is required")
    elif due <= today:
        errors.setdefault('due_date', []).append("Due date must be in the future")

    for doc_type in REQUIRED_DOCUMENTS:
        if doc_type not in documents:
            errors.setdefault(doc_type.value, []).append(f"{doc_type.label} is required")
    for doc_type, document in documents.items():
        problems = _document_errors(document, max_document_bytes)
        if problems:
            errors[doc_type.value] = problems

    return errors


def _document_errors(document: Document, max_bytes: int) -> List[str]:
    if document.size == 0:
        return ["File is empty"]
    if document.size > max_bytes:
        return [f"The maximum file size is {max_bytes // (1024 * 1024)}MB"]
    return []


class LoanLifecycleEngine:
    """
    Manages loan applications from submission through approval or rejection
    """

    def __init__(
        self,
        storage: StorageInterface,
        blob_store: BlobStore,
        user_log: UserLogTrail,
        interest_rate: Decimal = DEFAULT_INTEREST_RATE,
        max_document_bytes: int = DEFAULT_MAX_DOCUMENT_BYTES,
        documents_bucket: str = "loans"
    ):
        self.storage = storage
        self.blob_store = blob_store
        self.user_log = user_log
        self.interest_rate = Decimal(interest_rate)
        self.max_document_bytes = max_document_bytes
        self.documents_bucket = documents_bucket

    # Calculations

    def compute_total_return(self, amount: Union[Decimal, int, str]) -> Decimal:
        """Return amount at this engine's configured rate"""
        return compute_total_return(amount, self.interest_rate)

    def preview_total_return(self, amount: Any) -> Decimal:
        """
        Return amount shown to an applicant before submitting

        Raises:
            ValidationError: If amount is not a positive number
        """
        try:
            value = to_decimal(amount)
        except ValueError:
            value = None
        if value is None or value <= 0:
            raise ValidationError({'amount': ["Amount must be a positive number"]})
        return self.compute_total_return(quantize_amount(value))

    # Submission

    def submit(
        self,
        draft: ApplicationDraft,
        documents: Dict[DocumentType, Document],
        principal: Optional[Principal] = None,
        device_info: Optional[str] = None
    ) -> LoanApplication:
        """
        Submit a new loan application

        Inserts the pending record, uploads each document keyed by the new id,
        then stores the document URLs on the record.

        Args:
            draft: Applicant and financial fields
            documents: Uploaded files; ID document and bank statement are required
            principal: Signed-in applicant, None for anonymous submissions
            device_info: Client device / user agent string for the user log

        Returns:
            Created LoanApplication including its generated id

        Raises:
            ValidationError: Nothing was persisted
            PersistenceError: Insert failed (nothing persisted) or URL update
                failed (record exists, ``application_id`` set)
            StorageError: A document upload failed; record exists and the
                upload can be retried with upload_document
        """
        now = datetime.now(timezone.utc)
        errors = validate_draft(draft, documents, now.date(), self.max_document_bytes)
        if errors:
            log_action(logger, "info", "Loan application rejected by validation",
                       action="submit_loan", resource="loan_application",
                       extra={'fields': sorted(errors)})
            raise ValidationError(errors)

        application = LoanApplication(
            id="",
            name=str(draft.name).strip(),
            email=str(draft.email).strip().lower(),
            phone=str(draft.phone).strip(),
            id_number=str(draft.id_number).strip(),
            gender=str(draft.gender).strip(),
            dob=_parse_date(draft.dob),
            address=str(draft.address).strip(),
            amount=quantize_amount(to_decimal(draft.amount)),
            bank=str(draft.bank).strip(),
            account_number=str(draft.account_number).strip(),
            purpose=str(draft.purpose).strip(),
            due_date=_parse_date(draft.due_date),
            submitted_at=now,
            applicant_id=principal.id if principal else None
        )

        stored = self.storage.insert(PENDING_COLLECTION, application.to_dict())
        application.id = stored['id']

        urls = {}
        for doc_type in DocumentType:
            if doc_type in documents:
                try:
                    urls[doc_type.url_field] = self._upload(application.id, doc_type, documents[doc_type])
                except StorageError as e:
                    logger.error(f"Upload of {doc_type.value} for application {application.id} failed: {e}")
                    raise StorageError(
                        f"Failed to upload {doc_type.label}: {e.message}",
                        application_id=application.id
                    ) from e

        try:
            self.storage.update(PENDING_COLLECTION, application.id, urls)
        except PersistenceError as e:
            logger.error(f"Document URL update for application {application.id} failed: {e}")
            raise PersistenceError(
                f"Application saved but document links could not be stored: {e.message}",
                application_id=application.id
            ) from e

        for name, url in urls.items():
            setattr(application, name, url)

        log_action(logger, "info", f"Loan application submitted for {application.display_amount}",
                   user_id=application.applicant_id, action="submit_loan", resource=application.id)
        self.user_log.record(
            UserAction.LOAN_SUBMITTED, f"Loan application for {application.display_amount} submitted",
            user_id=application.applicant_id, entity_type="loan_application",
            entity_id=application.id, device_info=device_info,
            metadata={'amount': application.amount, 'due_date': application.due_date}
        )
        return application

    def upload_document(
        self,
        application_id: str,
        doc_type: DocumentType,
        document: Document,
        principal: Optional[Principal] = None
    ) -> str:
        """
        Upload (or re-upload) one document against an existing pending application

        Returns:
            Public URL of the stored document
        """
        problems = _document_errors(document, self.max_document_bytes)
        if problems:
            raise ValidationError({doc_type.value: problems})

        application = self._require_pending(application_id)
        if application.applicant_id and not (
            principal and (principal.id == application.applicant_id or principal.is_admin)
        ):
            raise AuthorizationError("Not allowed to upload documents for this application")

        url = self._upload(application_id, doc_type, document)
        try:
            self.storage.update(PENDING_COLLECTION, application_id, {doc_type.url_field: url})
        except PersistenceError as e:
            raise PersistenceError(
                f"Document uploaded but link could not be stored: {e.message}",
                application_id=application_id
            ) from e

        self.user_log.record(
            UserAction.DOCUMENT_UPLOADED, f"{doc_type.label} uploaded",
            user_id=principal.id if principal else None,
            entity_type="loan_application", entity_id=application_id
        )
        return url

    def _upload(self, application_id: str, doc_type: DocumentType, document: Document) -> str:
        path = f"loan-documents/{application_id}_{doc_type.value}_{int(time.time() * 1000)}.{document.extension}"
        return self.blob_store.upload(self.documents_bucket, path, document.content, document.content_type)

    # Decisions

    def approve(self, application_id: str, principal: Optional[Principal],
                device_info: Optional[str] = None) -> ApprovedLoan:
        """
        Approve a pending application

        Raises:
            AuthorizationError: Principal is not an admin (nothing touched)
            LoanNotFoundError: No pending application with this id
            PersistenceError: Insert failed; no state change, safe to retry
            PartialTransitionError: Approved record written but the pending
                record could not be removed; recover with reconcile().
                Also raised, with nothing written, when an earlier decision
                left a decided copy behind
        """
        require_admin(principal, "approve loans")
        application = self._require_pending(application_id)

        approved = ApprovedLoan(
            id="",
            **application.copied_fields(),
            application_id=application_id,
            decided_at=datetime.now(timezone.utc),
            total_return=self.compute_total_return(application.amount),
            decided_by=principal.id,
            settled=False
        )
        return self._transition(application, approved, principal, device_info)

    def reject(self, application_id: str, principal: Optional[Principal],
               device_info: Optional[str] = None) -> RejectedLoan:
        """
        Reject a pending application

        Same failure contract as approve().
        """
        require_admin(principal, "reject loans")
        application = self._require_pending(application_id)

        rejected = RejectedLoan(
            id="",
            **application.copied_fields(),
            application_id=application_id,
            decided_at=datetime.now(timezone.utc),
            decided_by=principal.id
        )
        return self._transition(application, rejected, principal, device_info)

    def _transition(self, application: LoanApplication, decided: LoanRecord,
                    principal: Principal, device_info: Optional[str]):
        destination = decided.state
        existing = self._decided_copies(application.id)
        if existing:
            # An earlier decision wrote its record but left the pending row behind
            earlier = existing[0]
            raise PartialTransitionError(
                f"Application {application.id} was already {earlier.state.value}; "
                f"reconcile it instead of deciding again",
                application_id=application.id,
                destination=earlier.state.collection,
                record=earlier.to_dict()
            )

        stored = self.storage.insert(destination.collection, decided.to_dict())
        decided.id = stored['id']

        # The destination insert has returned; only now touch the source
        try:
            removed = self.storage.delete(PENDING_COLLECTION, application.id)
        except PersistenceError as e:
            logger.error(f"Application {application.id} {destination.value} but still pending: {e}")
            raise PartialTransitionError(
                f"Loan {destination.value} but could not be removed from pending applications",
                application_id=application.id,
                destination=destination.collection,
                record=decided.to_dict()
            ) from e

        if not removed:
            # A concurrent decision removed the pending record first
            self._withdraw(decided, application.id)
            raise LoanNotFoundError(f"Application {application.id} was already decided")

        action = UserAction.LOAN_APPROVED if destination == LoanState.APPROVED else UserAction.LOAN_REJECTED
        log_action(logger, "info", f"Loan application {destination.value}",
                   user_id=principal.id, action=action.value, resource=application.id)
        self.user_log.record(
            action, f"Loan application for {application.display_amount} {destination.value}",
            user_id=principal.id, entity_type="loan_application", entity_id=application.id,
            device_info=device_info, metadata={'record_id': decided.id}
        )
        return decided

    def _withdraw(self, decided: LoanRecord, application_id: str) -> None:
        """Remove a destination row written by a decision that lost a race"""
        try:
            self.storage.delete(decided.state.collection, decided.id)
        except PersistenceError as e:
            raise PartialTransitionError(
                f"Duplicate {decided.state.value} record left for an already decided application",
                application_id=application_id,
                destination=decided.state.collection,
                record=decided.to_dict()
            ) from e
        logger.warning(f"Withdrew duplicate {decided.state.value} record {decided.id} "
                       f"for application {application_id}")

    def reconcile(self, application_id: str, principal: Optional[Principal]) -> bool:
        """
        Finish a partial transition by deleting the stale pending record

        Only the delete is retried; the destination record is never inserted
        again. Refuses to delete a pending record that has no decided copy.

        Returns:
            True when a pending record was removed
        """
        require_admin(principal, "reconcile loans")
        decided = self._decided_copies(application_id)
        if not decided:
            raise LoanNotFoundError(f"No decided record exists for application {application_id}")

        removed = self.storage.delete(PENDING_COLLECTION, application_id)
        if removed:
            self.user_log.record(
                UserAction.LOAN_RECONCILED, "Stale pending application removed",
                user_id=principal.id, entity_type="loan_application", entity_id=application_id,
                metadata={'destination': decided[0].state.value}
            )
        return removed

    def settle(self, approved_id: str, principal: Optional[Principal]) -> ApprovedLoan:
        """Mark an approved loan as settled once repayment is confirmed"""
        require_admin(principal, "settle loans")
        loan = self.get_approved(approved_id)
        if not loan:
            raise LoanNotFoundError(f"Approved loan {approved_id} not found")
        if loan.settled:
            return loan

        loan.settled = True
        loan.settled_at = datetime.now(timezone.utc)
        self.storage.update(APPROVED_COLLECTION, approved_id,
                            {'settled': True, 'settled_at': loan.settled_at})
        self.user_log.record(
            UserAction.LOAN_SETTLED, f"Loan of {loan.display_amount} settled",
            user_id=principal.id, entity_type="approved_loan", entity_id=approved_id
        )
        return loan

    # Reads

    def get_application(self, application_id: str) -> Optional[LoanApplication]:
        data = self.storage.get(PENDING_COLLECTION, application_id)
        return LoanApplication.from_dict(data) if data else None

    def get_approved(self, loan_id: str) -> Optional[ApprovedLoan]:
        data = self.storage.get(APPROVED_COLLECTION, loan_id)
        return ApprovedLoan.from_dict(data) if data else None

    def get_rejected(self, loan_id: str) -> Optional[RejectedLoan]:
        data = self.storage.get(REJECTED_COLLECTION, loan_id)
        return RejectedLoan.from_dict(data) if data else None

    def find_loan(self, loan_id: str) -> Optional[LoanRecord]:
        """Look a record up by id in every collection (View Details)"""
        for state, record_type in RECORD_TYPES.items():
            data = self.storage.get(state.collection, loan_id)
            if data:
                return record_type.from_dict(data)
        return None

    def list_loans(self, state: LoanState, filters: Optional[Dict[str, Any]] = None) -> List[LoanRecord]:
        """All records in one state, newest first"""
        order_by = 'submitted_at' if state == LoanState.PENDING else 'decided_at'
        record_type = RECORD_TYPES[state]
        return [record_type.from_dict(d) for d in
                self.storage.query(state.collection, filters, order_by=order_by, descending=True)]

    def list_applications(self, status: Optional[LoanState] = None,
                          search: Optional[str] = None) -> List[LoanRecord]:
        """
        Filter(status) and Search(query) over the loan book

        Args:
            status: Restrict to one state; all states when None
            search: Case-insensitive match on name, email, phone, ID number or purpose
        """
        states = [status] if status else list(LoanState)
        records: List[LoanRecord] = []
        for state in states:
            records.extend(self.list_loans(state))

        if search:
            needle = search.strip().lower()
            records = [r for r in records if _matches_search(r, needle)]

        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records

    def loans_for_email(self, email: str) -> Dict[LoanState, List[LoanRecord]]:
        """An applicant's loans grouped by state (user dashboard)"""
        filters = {'email': (email or "").strip().lower()}
        return {state: self.list_loans(state, filters) for state in LoanState}

    def _require_pending(self, application_id: str) -> LoanApplication:
        application = self.get_application(application_id)
        if not application:
            raise LoanNotFoundError(f"Pending application {application_id} not found")
        return application

    def _decided_copies(self, application_id: str) -> List[LoanRecord]:
        copies: List[LoanRecord] = []
        for state in (LoanState.APPROVED, LoanState.REJECTED):
            copies.extend(self.list_loans(state, {'application_id': application_id}))
        return copies


def _matches_search(record: LoanRecord, needle: str) -> bool:
    haystack = (record.name, record.email, record.phone, record.id_number, record.purpose)
    return any(needle in (value or "").lower() for value in haystack)


@dataclass
class RevenueSummary:
    """Totals across approved loans"""
    total_return: Decimal = Decimal('0.00')
    total_principal: Decimal = Decimal('0.00')
    loan_count: int = 0

    @property
    def total_interest(self) -> Decimal:
        return self.total_return - self.total_principal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_return': str(self.total_return),
            'total_principal': str(self.total_principal),
            'total_interest': str(self.total_interest),
            'loan_count': self.loan_count,
            'display_total_return': format_rand(self.total_return),
            'display_total_principal': format_rand(self.total_principal),
        }


def aggregate_revenue(approved_loans: Iterable[ApprovedLoan]) -> RevenueSummary:
    """Sum total_return and principal across approved loans"""
    summary = RevenueSummary()
    for loan in approved_loans:
        summary.total_return += loan.total_return
        summary.total_principal += loan.amount
        summary.loan_count += 1
    summary.total_return = quantize_amount(summary.total_return)
    summary.total_principal = quantize_amount(summary.total_principal)
    return summary


def month_compare(current: Any, previous: Any) -> Decimal:
    """
    Percentage change from the previous period to the current one

    When the previous period is zero the change is reported as +100%,
    whatever the current value (including zero).
    """
    current_value = to_decimal(current)
    previous_value = to_decimal(previous)
    if previous_value == 0:
        return Decimal('100')
    change = (current_value - previous_value) / previous_value * Decimal('100')
    return quantize_amount(change)
