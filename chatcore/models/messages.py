from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, JSON, Index, func
from . import Base

MESSAGE_TYPES = ('text', 'image', 'system', 'booking_update')
PRIORITIES = ('low', 'normal', 'high', 'urgent')
MAX_CONTENT_LENGTH = 2000

class Message(Base):
    __tablename__ = 'messages'
    id = Column(Integer, primary_key=True)
    sender_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    recipient_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    content = Column(Text, nullable=False)
    message_type = Column(String(32), nullable=False, default='text')
    thread_id = Column(String(128), nullable=False, index=True)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    priority = Column(String(16), nullable=False, default='normal')
    attachments = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('ix_messages_thread_created', 'thread_id', 'created_at'),
        Index('ix_messages_recipient_is_read', 'recipient_id', 'is_read'),
        Index('ix_messages_sender_created', 'sender_id', 'created_at'),
    )
