from sqlalchemy import Column, Integer, DateTime, JSON
from sqlalchemy.sql import func

from ..core.database import Base

class ClinicPolicy(Base):
    """Scheduling rules of one clinic.

    ``business_hours`` maps weekday keys (``mon`` .. ``sun``) to
    ``{"start": "HH:MM", "end": "HH:MM"}``; a weekday without an entry is a
    closed day. ``therapy_config`` maps a normalised therapy type to
    ``{"allowed_hours": {...}, "buffer_min": int}``.
    """
    __tablename__ = "clinic_policies"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, unique=True, nullable=False, index=True)

    # None means the clinic has not restricted its opening hours
    business_hours = Column(JSON, nullable=True)
    blackout_dates = Column(JSON, nullable=False, default=list)
    therapy_config = Column(JSON, nullable=False, default=dict)

    lead_time_hours = Column(Integer, nullable=False, default=0)
    # 0 disables the weekly cap
    max_reschedule_requests_per_week = Column(Integer, nullable=False, default=0)
    # Falls back to STALE_REQUEST_HOURS when unset
    stale_request_hours = Column(Integer, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<ClinicPolicy(clinic_id={self.clinic_id})>"
