from sqlalchemy import Column, Integer, String, DateTime, func
from . import Base

ROLES = ('member', 'admin')

class User(Base):
    __tablename__ = 'users'
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    role = Column(String(20), nullable=False, default='member', index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
