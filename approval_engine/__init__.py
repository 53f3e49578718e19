"""
Voucher Approval Engine

Role-based approval policy, voucher workflow state machine, cryptographic
signature binding and a bounded, hash-chained authorization audit trail
for branch banking operations.
"""

__version__ = "1.0.0"
