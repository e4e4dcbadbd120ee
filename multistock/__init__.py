"""Multi-tenant inventory ledger, FIFO valuation and insight service."""

__version__ = "1.0.0"
