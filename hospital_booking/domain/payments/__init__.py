"""Payments domain - charges, refunds and payment analytics"""

from .router import router

__all__ = ["router"]
