"""Chain-agnostic domain model for the multi-chain tax engine.

Assets, unified transactions, tax lots and reports are in-memory (Pydantic) models,
independent from the persistence models so the engine can be tested without a DB.
"""

__all__ = [
    "assets",
    "categorization",
    "jurisdiction",
    "pricing",
    "tax_engine",
    "tax_lots",
    "tax_report",
    "transaction",
]
