"""Appointments domain - booking orchestration and appointment lifecycle"""

from .router import router

__all__ = ["router"]
