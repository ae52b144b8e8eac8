from sqlalchemy import Column, String, ForeignKey, Integer
from sqlalchemy.orm import relationship
from order_placement.models.base import BaseModel


class Audit(BaseModel):
    __tablename__ = "audits"

    user_id = Column(ForeignKey("users.id"), nullable=False)

    user = relationship("User", backref="audit_logs")

    action = Column(String(64), nullable=False)
    resource_id = Column(Integer, nullable=True)
    payload_hash = Column(String(128), nullable=False)
