from sqlalchemy import Column, Integer, String, DateTime, Boolean
from sqlalchemy.sql import func

from ..core.database import Base

class Staff(Base):
    """Clinic staff who can be assigned to therapy sessions."""
    __tablename__ = "staff"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, unique=True, nullable=True)

    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    role = Column(String(50), nullable=False, default="therapist")
    specialization = Column(String(100), nullable=True)

    # Availability
    is_active = Column(Boolean, default=True)

    # Timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Staff(id={self.id}, name='{self.first_name} {self.last_name}', role='{self.role}')>"
