"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the categorization models used by ``hybrid_categorizer``.
"""

from .finance import Base, CategoryRow, DecisionRow, TransactionRow

__all__ = [
    "Base",
    "CategoryRow",
    "DecisionRow",
    "TransactionRow",
]
