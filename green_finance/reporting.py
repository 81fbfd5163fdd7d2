"""
Reporting Module

Revenue, loan statistics, month-over-month movement and report export for
the admin dashboard. All figures are computed from the current collections
on every call.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Union
from enum import Enum
import uuid
import csv
import io
import json

from .loans import (
    LoanLifecycleEngine, LoanRecord, LoanState, RevenueSummary,
    aggregate_revenue, month_compare
)
from .logging_config import get_logger
from .money import format_rand, quantize_amount

logger = get_logger("green_finance.reporting")

ONE_PLACE = Decimal('0.1')


class ReportKind(Enum):
    """Exportable loan reports"""
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING = "pending"

    @property
    def state(self) -> LoanState:
        return LoanState(self.value)


class ReportFormat(Enum):
    """Output formats for reports"""
    DICT = "dict"
    CSV = "csv"
    JSON = "json"


# Export columns per report, in display order
REPORT_COLUMNS = {
    ReportKind.PENDING: ['id', 'name', 'email', 'phone', 'amount', 'purpose',
                         'due_date', 'submitted_at'],
    ReportKind.APPROVED: ['id', 'application_id', 'name', 'email', 'phone', 'amount',
                          'total_return', 'due_date', 'decided_at', 'settled'],
    ReportKind.REJECTED: ['id', 'application_id', 'name', 'email', 'phone', 'amount',
                          'purpose', 'decided_at'],
}


@dataclass
class ReportResult:
    """Result of a report run"""
    report_id: str
    kind: ReportKind
    generated_at: datetime
    data: List[Dict[str, Any]]
    totals: Dict[str, Any] = field(default_factory=dict)


def _rate(part: int, whole: int) -> Decimal:
    if whole == 0:
        return Decimal('0.0')
    return (Decimal(part) / Decimal(whole) * Decimal('100')).quantize(ONE_PLACE, rounding=ROUND_HALF_UP)


def _average(total: Decimal, count: int) -> Decimal:
    if count == 0:
        return Decimal('0.00')
    return quantize_amount(total / Decimal(count))


def _shift_month(day: date, months: int) -> date:
    """First day of the month ``months`` away from ``day``'s month"""
    index = day.year * 12 + (day.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def _in_month(moment: Optional[datetime], month_start: date) -> bool:
    return moment is not None and (moment.year, moment.month) == (month_start.year, month_start.month)


class ReportingService:
    """
    Dashboard figures and report export over the loan collections
    """

    def __init__(self, engine: LoanLifecycleEngine):
        self.engine = engine

    def _approved(self) -> List[LoanRecord]:
        return self.engine.list_loans(LoanState.APPROVED)

    def revenue_summary(self) -> RevenueSummary:
        """Total return and principal across approved loans"""
        return aggregate_revenue(self._approved())

    def loan_statistics(self) -> Dict[str, Any]:
        """
        Counts and rates across the loan book

        Rates are percentages of all applications (pending, approved and
        rejected) to one decimal place.
        """
        pending = self.engine.list_loans(LoanState.PENDING)
        approved = self._approved()
        rejected = self.engine.list_loans(LoanState.REJECTED)
        total = len(pending) + len(approved) + len(rejected)

        approved_amount = sum((l.amount for l in approved), Decimal('0'))
        pending_amount = sum((l.amount for l in pending), Decimal('0'))

        return {
            'pending_count': len(pending),
            'approved_count': len(approved),
            'rejected_count': len(rejected),
            'total_count': total,
            'approval_rate': _rate(len(approved), total),
            'rejection_rate': _rate(len(rejected), total),
            'total_approved_amount': quantize_amount(approved_amount),
            'total_pending_amount': quantize_amount(pending_amount),
            'average_approved_amount': _average(approved_amount, len(approved)),
            'average_pending_amount': _average(pending_amount, len(pending)),
            'settled_count': sum(1 for l in approved if l.settled),
        }

    def month_over_month(self, today: Optional[date] = None) -> Dict[str, Any]:
        """Approved principal this calendar month against the previous one"""
        today = today or datetime.now(timezone.utc).date()
        this_month = _shift_month(today, 0)
        last_month = _shift_month(today, -1)
        approved = self._approved()

        current = sum((l.amount for l in approved if _in_month(l.decided_at, this_month)), Decimal('0'))
        previous = sum((l.amount for l in approved if _in_month(l.decided_at, last_month)), Decimal('0'))

        return {
            'current_month': this_month.strftime('%Y-%m'),
            'previous_month': last_month.strftime('%Y-%m'),
            'current_amount': quantize_amount(current),
            'previous_amount': quantize_amount(previous),
            'change_percent': month_compare(current, previous),
        }

    def monthly_trend(self, today: Optional[date] = None, months: int = 6) -> List[Dict[str, Any]]:
        """Approved and rejected counts for each of the last ``months`` months, oldest first"""
        today = today or datetime.now(timezone.utc).date()
        approved = self._approved()
        rejected = self.engine.list_loans(LoanState.REJECTED)

        trend = []
        for offset in range(months - 1, -1, -1):
            month_start = _shift_month(today, -offset)
            month_approved = [l for l in approved if _in_month(l.decided_at, month_start)]
            trend.append({
                'month': month_start.strftime('%Y-%m'),
                'approved_count': len(month_approved),
                'rejected_count': sum(1 for l in rejected if _in_month(l.decided_at, month_start)),
                'approved_amount': quantize_amount(sum((l.amount for l in month_approved), Decimal('0'))),
            })
        return trend

    def amount_due_for(self, email: str) -> Decimal:
        """Sum of total_return over a user's unsettled approved loans"""
        loans = self.engine.loans_for_email(email)[LoanState.APPROVED]
        return quantize_amount(sum((l.total_return for l in loans if not l.settled), Decimal('0')))

    # Export

    def run_report(self, kind: Union[ReportKind, str]) -> ReportResult:
        """Build the rows of an approved, rejected or pending loan report"""
        kind = ReportKind(kind)
        columns = REPORT_COLUMNS[kind]
        records = self.engine.list_loans(kind.state)

        data = []
        for record in records:
            row = record.to_dict()
            data.append({column: row.get(column) for column in columns})

        totals: Dict[str, Any] = {
            'count': len(records),
            'amount': str(quantize_amount(sum((r.amount for r in records), Decimal('0')))),
        }
        if kind == ReportKind.APPROVED:
            summary = aggregate_revenue(records)
            totals['total_return'] = str(summary.total_return)
            totals['display_total_return'] = format_rand(summary.total_return)

        logger.info(f"Generated {kind.value} loan report with {len(data)} rows")
        return ReportResult(
            report_id=str(uuid.uuid4()),
            kind=kind,
            generated_at=datetime.now(timezone.utc),
            data=data,
            totals=totals
        )

    def export(self, kind: Union[ReportKind, str],
               format: Union[ReportFormat, str] = ReportFormat.DICT) -> Union[Dict, str]:
        """Run a report and export it as a dict, JSON text or CSV text"""
        return self.export_report(self.run_report(kind), ReportFormat(format))

    def export_report(self, result: ReportResult, format: ReportFormat) -> Union[Dict, str]:
        """
        Export report result in specified format
        """
        if format == ReportFormat.DICT:
            return {
                'report_id': result.report_id,
                'kind': result.kind.value,
                'generated_at': result.generated_at.isoformat(),
                'data': result.data,
                'totals': result.totals
            }

        elif format == ReportFormat.JSON:
            export_dict = self.export_report(result, ReportFormat.DICT)
            return json.dumps(export_dict, indent=2, default=str)

        elif format == ReportFormat.CSV:
            output = io.StringIO()
            writer = csv.DictWriter(output, fieldnames=REPORT_COLUMNS[result.kind])
            writer.writeheader()
            for row in result.data:
                writer.writerow(row)
            csv_content = output.getvalue()
            output.close()
            return csv_content

        else:
            raise ValueError(f"Unsupported export format: {format}")
