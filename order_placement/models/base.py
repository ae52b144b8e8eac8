from sqlalchemy import Column, Integer, DateTime
from sqlalchemy.orm import declarative_base
from order_placement.utils.timeutils import utcnow

Base = declarative_base()


class BaseModel(Base):
    __abstract__ = True

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
