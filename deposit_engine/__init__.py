"""
Deposit Engine

Back-office engine for cooperative deposit products: quarterly minimum-balance
interest with idempotent batch posting and reversal, and fixed-deposit
lifecycle management. All money is Decimal with two fractional digits and
every balance used for interest is reconstructed from the append-only ledger.
"""

__version__ = "1.0.0"
