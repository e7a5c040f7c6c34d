"""
Household Ledger backend.

Spreadsheet/CSV transaction import, single-transaction ingestion for the
WhatsApp integration, phone verification and dynamic goal progress.
"""

__version__ = "0.1.0"
