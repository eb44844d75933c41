from datetime import datetime, timedelta
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, Index, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from ..core.database import Base

class SessionStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class TherapySession(Base):
    __tablename__ = "therapy_sessions"
    __table_args__ = (
        Index("ix_therapy_sessions_staff_window", "assigned_staff_id", "scheduled_at"),
        Index("ix_therapy_sessions_room_window", "room_id", "scheduled_at"),
        Index("ix_therapy_sessions_patient_window", "patient_id", "scheduled_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, nullable=False, index=True)

    # Relationships
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    assigned_staff_id = Column(Integer, ForeignKey("staff.id"), nullable=True)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=True)

    # Session details
    therapy_type = Column(String(100), nullable=False)
    scheduled_at = Column(DateTime, nullable=False, index=True)
    duration_minutes = Column(Integer, nullable=False, default=60)
    # Always scheduled_at + duration_minutes; kept so overlap queries stay in SQL
    ends_at = Column(DateTime, nullable=False, index=True)
    status = Column(SQLEnum(SessionStatus), nullable=False, default=SessionStatus.SCHEDULED, index=True)
    notes = Column(Text, nullable=True)

    # Tracking
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    completed_at = Column(DateTime, nullable=True)

    patient = relationship("Patient", back_populates="sessions")
    room = relationship("Room")
    reschedule_requests = relationship("RescheduleRequest", back_populates="session")

    def set_window(self, start: datetime, duration_minutes: int) -> None:
        """Move the session; start and end are never written independently."""
        self.scheduled_at = start
        self.duration_minutes = duration_minutes
        self.ends_at = start + timedelta(minutes=duration_minutes)

    def __repr__(self):
        return f"<TherapySession(id={self.id}, patient_id={self.patient_id}, therapy='{self.therapy_type}', at='{self.scheduled_at}')>"
