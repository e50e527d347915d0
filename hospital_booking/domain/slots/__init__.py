"""Slots domain - practitioner availability and slot reservation"""

from .router import router

__all__ = ["router"]
