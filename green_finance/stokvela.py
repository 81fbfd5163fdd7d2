"""
Stokvela Module

Read-only view of the rotating savings group: members in payout order and
the next member due to receive the pot.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum

from .money import format_rand
from .storage import StorageInterface, StorageRecord

STOKVELA_COLLECTION = "stokvela_members"


class PayoutStatus(Enum):
    """Where a member stands in the payout rotation"""
    RECEIVED = "received"
    TODAY = "today"
    UPCOMING = "upcoming"


@dataclass
class StokvelaMember(StorageRecord):
    """Member of the stokvela and their scheduled payout"""
    user_number: int
    name: str
    email: str
    phone: str
    amount_paid: Decimal
    amount_to_receive: Decimal
    receiving_date: date

    @property
    def display_amount_to_receive(self) -> str:
        return format_rand(self.amount_to_receive)


class StokvelaSchedule:
    """
    Reads over stokvela_members
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def list_members(self) -> List[StokvelaMember]:
        """All members ordered by user number"""
        return [StokvelaMember.from_dict(d) for d in
                self.storage.query(STOKVELA_COLLECTION, order_by='user_number')]

    def next_payout(self, today: Optional[date] = None) -> Optional[StokvelaMember]:
        """Member with the earliest receiving date on or after today"""
        today = today or date.today()
        upcoming = [m for m in self.list_members() if m.receiving_date >= today]
        if not upcoming:
            return None
        return min(upcoming, key=lambda m: (m.receiving_date, m.user_number))

    def member_status(self, member: StokvelaMember, today: Optional[date] = None) -> PayoutStatus:
        today = today or date.today()
        if member.receiving_date < today:
            return PayoutStatus.RECEIVED
        if member.receiving_date == today:
            return PayoutStatus.TODAY
        return PayoutStatus.UPCOMING
