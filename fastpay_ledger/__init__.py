"""
FastPay Ledger

Account ledger for the FastPay demo bank: balances, transaction history,
transfers and loans with Decimal money math, versioned persistence and
read projections for the dashboard and analytics screens.
"""

__version__ = "1.0.0"
