"""
Authentication endpoints
"""

from fastapi import APIRouter, Depends, Request, status

from .deps import LendingSystem, get_lending_system, require_principal
from .schemas import (
    ConfirmEmailRequest, ForgotPasswordRequest, ResetPasswordRequest, SignInRequest,
    SignUpRequest, user_response
)
from ..identity import Principal


router = APIRouter()


@router.post("/sign-up", status_code=status.HTTP_201_CREATED)
async def sign_up(
    request: SignUpRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Register an account; the confirmation token is delivered out of band"""
    result = system.auth.sign_up(
        email=request.email,
        password=request.password,
        full_names=request.full_names,
        gender=request.gender,
        cellphone=request.cellphone,
        date_of_birth=request.date_of_birth
    )
    return {
        "user": user_response(result['user']),
        "confirmation_token": result['confirmation_token'],
        "message": "Account created. Please confirm your email address."
    }


@router.post("/confirm")
async def confirm_email(
    request: ConfirmEmailRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Confirm an email address and start a session"""
    token = system.auth.confirm_email(request.token)
    return {"access_token": token, "token_type": "bearer"}


@router.post("/sign-in")
async def sign_in(
    request: SignInRequest,
    http_request: Request,
    system: LendingSystem = Depends(get_lending_system)
):
    """Sign in with email and password"""
    token = system.auth.sign_in(
        request.email, request.password,
        device_info=http_request.headers.get("user-agent")
    )
    return {
        "access_token": token,
        "token_type": "bearer",
        "expires_in": system.config.jwt_expiry_hours * 3600
    }


@router.post("/forgot-password")
async def forgot_password(
    request: ForgotPasswordRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Start a password reset; the reset token is delivered out of band"""
    system.auth.request_password_reset(request.email)
    return {"message": "If an account exists for this email, a reset link has been sent."}


@router.post("/reset-password")
async def reset_password(
    request: ResetPasswordRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Set a new password with a reset token"""
    system.auth.reset_password(request.token, request.new_password)
    return {"message": "Password updated. Please sign in."}


@router.get("/me")
async def current_user(
    principal: Principal = Depends(require_principal),
    system: LendingSystem = Depends(get_lending_system)
):
    """Account of the signed-in user"""
    return user_response(system.user_manager.get_user(principal.id))


@router.post("/sign-out")
async def sign_out(
    http_request: Request,
    principal: Principal = Depends(require_principal),
    system: LendingSystem = Depends(get_lending_system)
):
    """End the session; the client discards its token"""
    system.auth.sign_out(principal, device_info=http_request.headers.get("user-agent"))
    return {"message": "Signed out"}
