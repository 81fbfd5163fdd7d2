"""
Stokvela endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends

from .deps import LendingSystem, get_lending_system, require_principal
from .schemas import member_response
from ..identity import Principal


router = APIRouter()


@router.get("/members")
async def list_members(
    today: Optional[date] = None,
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Stokvela members in payout order"""
    schedule = system.stokvela
    members = schedule.list_members()
    return {
        "count": len(members),
        "members": [member_response(m, schedule.member_status(m, today)) for m in members]
    }


@router.get("/next-payout")
async def next_payout(
    today: Optional[date] = None,
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Next member due to receive a payout"""
    schedule = system.stokvela
    member = schedule.next_payout(today)
    if member is None:
        return {"next_payout": None, "message": "No upcoming Stokvela payments"}
    return {"next_payout": member_response(member, schedule.member_status(member, today))}
