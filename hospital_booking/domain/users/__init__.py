"""Users domain - identity lookups (the identity subsystem owns the data)"""

from .repository import UserRepository

__all__ = ["UserRepository"]
