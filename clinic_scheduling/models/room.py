from sqlalchemy import Column, Integer, String, DateTime, Text, JSON
from sqlalchemy.sql import func

from ..core.database import Base

# Capability that matches every therapy type
ANY_THERAPY = "any"

class Room(Base):
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, nullable=False, index=True)
    name = Column(String(100), nullable=False)

    # Normalised therapy types this room is equipped for
    therapy_types = Column(JSON, nullable=False, default=list)
    # Max concurrent sessions of a matching type in the same interval
    capacity = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default="active", index=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def supports(self, therapy_type: str) -> bool:
        types = self.therapy_types or []
        return therapy_type in types or ANY_THERAPY in types

    def __repr__(self):
        return f"<Room(id={self.id}, name='{self.name}', capacity={self.capacity})>"
