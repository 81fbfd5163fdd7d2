"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, status

from .deps import LendingSystem, get_current_principal, get_lending_system, require_principal
from .schemas import MoneyModel, loan_response
from ..documents import Document, DocumentType
from ..errors import AuthorizationError
from ..identity import Principal, require_admin
from ..loans import ApplicationDraft, LoanState


router = APIRouter()


async def _to_document(upload: Optional[UploadFile]) -> Optional[Document]:
    if upload is None or not upload.filename:
        return None
    content = await upload.read()
    return Document(filename=upload.filename, content=content, content_type=upload.content_type)


def _parse_state(value: Optional[str]) -> Optional[LoanState]:
    if not value or value == "all":
        return None
    try:
        return LoanState(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown status: {value}")


@router.post("/applications", status_code=status.HTTP_201_CREATED)
async def submit_application(
    request: Request,
    name: str = Form(""),
    email: str = Form(""),
    phone: str = Form(""),
    id_number: str = Form(""),
    gender: str = Form(""),
    dob: str = Form(""),
    address: str = Form(""),
    amount: str = Form(""),
    bank: str = Form(""),
    account_number: str = Form(""),
    purpose: str = Form(""),
    due_date: str = Form(""),
    id_document: Optional[UploadFile] = File(None),
    proof_of_income: Optional[UploadFile] = File(None),
    bank_statement: Optional[UploadFile] = File(None),
    system: LendingSystem = Depends(get_lending_system),
    principal: Optional[Principal] = Depends(get_current_principal)
):
    """Submit a loan application with its supporting documents"""
    draft = ApplicationDraft(
        name=name, email=email, phone=phone, id_number=id_number, gender=gender,
        dob=dob, address=address, amount=amount, bank=bank,
        account_number=account_number, purpose=purpose, due_date=due_date
    )
    uploads = {
        DocumentType.ID_DOCUMENT: id_document,
        DocumentType.PROOF_OF_INCOME: proof_of_income,
        DocumentType.BANK_STATEMENT: bank_statement,
    }
    documents = {}
    for doc_type, upload in uploads.items():
        document = await _to_document(upload)
        if document is not None:
            documents[doc_type] = document

    application = system.loan_engine.submit(
        draft, documents, principal=principal,
        device_info=request.headers.get("user-agent")
    )
    return {
        "application_id": application.id,
        "state": application.state.value,
        "application": loan_response(application),
        "message": "Loan application submitted successfully"
    }


@router.get("/applications")
async def list_applications(
    status: Optional[str] = None,
    search: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Filter and search the loan book (admin)"""
    require_admin(principal, "view loan applications")
    records = system.loan_engine.list_applications(_parse_state(status), search)
    return {
        "count": len(records),
        "loans": [loan_response(r) for r in records]
    }


@router.get("/preview")
async def preview_total_return(
    amount: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Total return an applicant would owe for an amount"""
    total = system.loan_engine.preview_total_return(amount)
    return {
        "amount": amount,
        "interest_rate": str(system.loan_engine.interest_rate),
        "total_return": MoneyModel.from_amount(total).model_dump()
    }


@router.get("/mine")
async def my_loans(
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """The signed-in user's loans grouped by state"""
    grouped = system.loan_engine.loans_for_email(principal.email)
    amount_due = system.reporting.amount_due_for(principal.email)
    return {
        "pending": [loan_response(r) for r in grouped[LoanState.PENDING]],
        "approved": [loan_response(r) for r in grouped[LoanState.APPROVED]],
        "rejected": [loan_response(r) for r in grouped[LoanState.REJECTED]],
        "amount_due": MoneyModel.from_amount(amount_due).model_dump()
    }


@router.get("/applications/{loan_id}")
async def get_application(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """View details of a loan in any state"""
    record = system.loan_engine.find_loan(loan_id)
    if not record:
        raise HTTPException(status_code=404, detail="Loan not found")
    if not principal.is_admin and record.email != principal.email:
        raise AuthorizationError("Not allowed to view this loan")
    return loan_response(record)


@router.post("/applications/{application_id}/approve")
async def approve_application(
    application_id: str,
    request: Request,
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Approve a pending application"""
    approved = system.loan_engine.approve(
        application_id, principal, device_info=request.headers.get("user-agent")
    )
    return {
        "loan_id": approved.id,
        "application_id": application_id,
        "state": approved.state.value,
        "total_return": MoneyModel.from_amount(approved.total_return).model_dump(),
        "message": "Loan approved successfully"
    }


@router.post("/applications/{application_id}/reject")
async def reject_application(
    application_id: str,
    request: Request,
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Reject a pending application"""
    rejected = system.loan_engine.reject(
        application_id, principal, device_info=request.headers.get("user-agent")
    )
    return {
        "loan_id": rejected.id,
        "application_id": application_id,
        "state": rejected.state.value,
        "message": "Loan rejected"
    }


@router.post("/applications/{application_id}/reconcile")
async def reconcile_application(
    application_id: str,
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Remove a pending record left behind by a partial transition"""
    removed = system.loan_engine.reconcile(application_id, principal)
    return {"application_id": application_id, "removed": removed}


@router.post("/applications/{application_id}/documents/{doc_type}")
async def upload_document(
    application_id: str,
    doc_type: DocumentType,
    file: UploadFile = File(...),
    system: LendingSystem = Depends(get_lending_system),
    principal: Optional[Principal] = Depends(get_current_principal)
):
    """Upload or re-upload a document for a pending application"""
    document = await _to_document(file)
    if document is None:
        raise HTTPException(status_code=400, detail="No file provided")
    url = system.loan_engine.upload_document(application_id, doc_type, document, principal)
    return {"application_id": application_id, "document": doc_type.value, "url": url}


@router.post("/approved/{loan_id}/settle")
async def settle_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Mark an approved loan as settled"""
    loan = system.loan_engine.settle(loan_id, principal)
    return loan_response(loan)
