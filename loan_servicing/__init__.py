"""
Loan Servicing Engine

Repayment allocation, balance reconciliation and loan performance
classification for a microfinance loan book, with exact Decimal money
math and a hash-chained audit trail.
"""

__version__ = "1.0.0"
