from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

MessageType = Literal['text', 'image', 'system', 'booking_update']
Priority = Literal['low', 'normal', 'high', 'urgent']


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class Attachment(CamelModel):
    filename: str
    url: str
    type: Optional[str] = None
    size: Optional[int] = Field(default=None, ge=0)

class MessageIn(CamelModel):
    recipient_id: Optional[int] = None
    content: Optional[str] = None
    caption: Optional[str] = None
    priority: Priority = 'normal'
    message_type: Literal['text', 'image'] = 'text'
    attachment: Optional[Attachment] = None

class SystemMessageIn(CamelModel):
    recipient_id: int
    content: str
    message_type: Literal['system', 'booking_update'] = 'system'
    priority: Priority = 'normal'

class MessageOut(CamelModel):
    id: int
    sender_id: int
    recipient_id: int
    content: str
    message_type: MessageType
    thread_id: str
    is_read: bool
    read_at: Optional[datetime] = None
    priority: Priority
    attachments: List[Attachment] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class CounterpartOut(CamelModel):
    id: int
    name: str
    email: str
    role: str

class DirectoryUserOut(CounterpartOut):
    created_at: Optional[datetime] = None
    unread_count: int = 0

class PaginationOut(CamelModel):
    current: int
    total: int
    count: int
    total_items: int

class ConversationOut(CamelModel):
    messages: List[MessageOut]
    other_user: CounterpartOut
    pagination: PaginationOut

class LastMessageOut(CamelModel):
    id: int
    content: str
    created_at: Optional[datetime] = None
    is_from_current_user: bool
    message_type: MessageType
    priority: Priority

class ConversationSummaryOut(CamelModel):
    thread_id: str
    other_user: Optional[CounterpartOut] = None
    last_message: LastMessageOut
    unread_count: int

class ConversationsOut(CamelModel):
    conversations: List[ConversationSummaryOut]

class UnreadCountOut(CamelModel):
    unread_count: int

class MarkReadOut(CamelModel):
    modified_count: int

class DirectoryOut(CamelModel):
    users: List[DirectoryUserOut]
    pagination: Optional[PaginationOut] = None

class PresenceOut(CamelModel):
    user_id: int
    online: bool
