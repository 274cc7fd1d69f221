"""DoctorService model: which consultation types a doctor offers, and at what unit price."""

from __future__ import annotations

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Numeric
from sqlalchemy.orm import backref, relationship

from app.db import Base
from app.models.mixins import TimestampMixin


class DoctorService(Base, TimestampMixin):
    """
    One row per doctor. Chat price is per message; audio and video prices
    are per second of call time.
    """

    __tablename__ = "doctor_services"

    id = Column(Integer, primary_key=True, autoincrement=True)
    doctor_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    chat_enabled = Column(Boolean, nullable=False, default=False)
    chat_price = Column(Numeric(10, 2), nullable=False, default=0)
    audio_call_enabled = Column(Boolean, nullable=False, default=False)
    audio_call_price = Column(Numeric(10, 2), nullable=False, default=0)
    video_call_enabled = Column(Boolean, nullable=False, default=False)
    video_call_price = Column(Numeric(10, 2), nullable=False, default=0)

    doctor = relationship("User", backref=backref("doctor_service", uselist=False))
