"""Lookups for session participants and doctor pricing."""

from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session

from app.constants.chat import UserRole
from app.models.doctor_service import DoctorService
from app.models.user import User


class UserService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get_user(self, user_id: int) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id).first()

    def get_active_user(self, user_id: int) -> Optional[User]:
        return (
            self.db.query(User)
            .filter(User.id == user_id, User.is_active.is_(True))
            .first()
        )

    def get_approved_doctor(self, doctor_id: int) -> Optional[User]:
        """An active, approved user with the doctor role, or None."""
        return (
            self.db.query(User)
            .filter(
                User.id == doctor_id,
                User.role == UserRole.DOCTOR,
                User.is_active.is_(True),
                User.is_approved.is_(True),
            )
            .first()
        )

    def get_doctor_pricing(self, doctor_id: int) -> Optional[DoctorService]:
        return (
            self.db.query(DoctorService)
            .filter(DoctorService.doctor_id == doctor_id)
            .first()
        )

    def get_display_name(self, user_id: int) -> Optional[str]:
        user = self.get_user(user_id)
        return user.full_name if user else None
