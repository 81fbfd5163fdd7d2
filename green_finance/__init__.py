"""
Green Finance Lending Core

Loan application lifecycle, fixed-rate return calculation, user management
and reporting for the Green Finance lending dashboard. All monetary values
use Decimal and are displayed in Rand.
"""

__version__ = "1.0.0"
