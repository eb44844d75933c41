from sqlalchemy import Column, Integer, ForeignKey, DateTime, Date, Time, Text, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from ..core.database import Base

class RescheduleRequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    # Stale pending requests closed by the cleanup job
    CANCELLED = "cancelled"

class RescheduleRequest(Base):
    __tablename__ = "reschedule_requests"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, nullable=False, index=True)
    session_id = Column(Integer, ForeignKey("therapy_sessions.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    requested_by = Column(Integer, nullable=False, index=True)

    # Optional preference supplied by the patient
    requested_date = Column(Date, nullable=True)
    requested_time = Column(Time, nullable=True)
    reason = Column(Text, nullable=False)

    status = Column(SQLEnum(RescheduleRequestStatus), nullable=False, default=RescheduleRequestStatus.PENDING, index=True)
    processed_by = Column(Integer, nullable=True)
    processed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), index=True)

    session = relationship("TherapySession", back_populates="reschedule_requests")

    @property
    def is_resolved(self) -> bool:
        return self.status != RescheduleRequestStatus.PENDING

    def __repr__(self):
        return f"<RescheduleRequest(id={self.id}, session_id={self.session_id}, status='{self.status}')>"
