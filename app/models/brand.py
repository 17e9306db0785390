# Brands are owned by the dashboard; only id and name are read here

from sqlalchemy import Column, String, DateTime, Uuid, func
import uuid

from app.models.base import Base


class Brand(Base):
    __tablename__ = "brands"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
