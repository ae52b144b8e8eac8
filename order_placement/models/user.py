from sqlalchemy import Column, String, Enum
from order_placement.models.base import BaseModel
from order_placement.core.enums import UserRole


class User(BaseModel):
    __tablename__ = "users"
    username = Column(String(64), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=True)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.MEMBER)
