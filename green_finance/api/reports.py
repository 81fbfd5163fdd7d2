"""
Reporting endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends
from fastapi.responses import Response

from .deps import LendingSystem, get_lending_system, require_principal
from .schemas import plain
from ..identity import Principal, require_admin
from ..reporting import ReportFormat, ReportKind


router = APIRouter()


@router.get("/revenue")
async def revenue(
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Total return across approved loans"""
    require_admin(principal, "view revenue")
    return system.reporting.revenue_summary().to_dict()


@router.get("/statistics")
async def statistics(
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Loan counts, rates and averages"""
    require_admin(principal, "view statistics")
    return plain(system.reporting.loan_statistics())


@router.get("/month-compare")
async def month_compare(
    today: Optional[date] = None,
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Approved principal this month against last month"""
    require_admin(principal, "view monthly comparison")
    return plain(system.reporting.month_over_month(today))


@router.get("/trend")
async def trend(
    months: int = 6,
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Approved and rejected counts per month"""
    require_admin(principal, "view trends")
    return plain(system.reporting.monthly_trend(months=months))


@router.get("/export/{kind}")
async def export_report(
    kind: ReportKind,
    format: ReportFormat = ReportFormat.DICT,
    system: LendingSystem = Depends(get_lending_system),
    principal: Principal = Depends(require_principal)
):
    """Export a loan report as JSON rows or CSV"""
    require_admin(principal, "export reports")
    exported = system.reporting.export(kind, format)

    if format == ReportFormat.CSV:
        return Response(
            content=exported,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{kind.value}_loans.csv"'}
        )
    if format == ReportFormat.JSON:
        return Response(content=exported, media_type="application/json")
    return exported
