"""
User management endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status

from .deps import LendingSystem, get_lending_system, require_principal
from .schemas import (
    AddUserRequest, SetConfirmedRequest, SetRoleRequest, UpdateProfileRequest, user_response
)
from ..documents import Document
from ..errors import ValidationError
from ..identity import Principal, Role, require_admin, require_self_or_admin


router = APIRouter()


@router.get("")
async def list_users(
    role: Optional[int] = None,
    search: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """List users (admin)"""
    require_admin(principal, "list users")
    try:
        role_filter = Role(role) if role is not None else None
    except ValueError:
        raise ValidationError({'role': [f"Unknown role {role}"]})
    users = system.user_manager.list_users(role=role_filter, search=search)
    return {"count": len(users), "users": [user_response(u) for u in users]}


@router.post("", status_code=status.HTTP_201_CREATED)
async def add_user(
    request: AddUserRequest,
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Add a user from the user management screen (admin)"""
    account = system.user_manager.add_user(principal, **request.model_dump())
    return user_response(account)


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Get user details"""
    require_self_or_admin(principal, user_id, "view user details")
    user = system.user_manager.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user_response(user)


@router.patch("/{user_id}")
async def update_user(
    user_id: str,
    request: UpdateProfileRequest,
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Update profile fields"""
    changes = request.model_dump(exclude_unset=True)
    user = system.user_manager.update_profile(user_id, changes, principal)
    return user_response(user)


@router.put("/{user_id}/role")
async def set_role(
    user_id: str,
    request: SetRoleRequest,
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Change a user's role (admin)"""
    return user_response(system.user_manager.set_role(user_id, request.role, principal))


@router.put("/{user_id}/confirmed")
async def set_confirmed(
    user_id: str,
    request: SetConfirmedRequest,
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Activate or deactivate a user (admin)"""
    return user_response(system.user_manager.set_confirmed(user_id, request.confirmed, principal))


@router.delete("/{user_id}")
async def delete_user(
    user_id: str,
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Delete a user (admin)"""
    removed = system.user_manager.delete_user(user_id, principal)
    return {"user_id": user_id, "deleted": removed}


@router.post("/{user_id}/profile-picture")
async def upload_profile_picture(
    user_id: str,
    file: UploadFile = File(...),
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Upload a profile picture"""
    content = await file.read()
    document = Document(filename=file.filename or "picture", content=content,
                        content_type=file.content_type)
    url = system.user_manager.upload_profile_picture(user_id, document, principal)
    return {"user_id": user_id, "profile_picture": url}
