"""User repository - identity lookups for the booking engine"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import User


class UserRepository:
    """Read-only access to identity records"""

    @staticmethod
    def find_user_by_id(db: Session, user_id: int) -> Optional[User]:
        """Get user by ID"""
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def find_by_role(db: Session, role: str, specialty: Optional[str] = None) -> list[User]:
        """Active users with a role, optionally narrowed to a specialty"""
        query = db.query(User).filter(User.role == role, User.is_active.is_(True))
        if specialty:
            query = query.filter(User.specialty == specialty)
        return query.order_by(User.last_name, User.first_name).all()
