"""
Lending Core

Loan financial lifecycle engine: weekly payment schedules, loan status
tracking, funding through a payment processor, closure and derogatory
reconciliation, delinquency tracking and pay-per-use verification billing.
"""

__version__ = "1.0.0"
