"""
Online Banking Ledger Core

Balance-affecting flows of a retail online bank (deposit approval, transfers,
loan disbursement and repayment) with atomic ledger postings, soft-delete
and an append-only audit log.
"""

__version__ = "1.0.0"
