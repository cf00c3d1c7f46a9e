from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from typing import List, Optional


class Role(str, Enum):
    CUSTOMER = "customer"
    BUSINESS = "business"

    @property
    def id_field(self) -> str:
        return "business_id" if self is Role.BUSINESS else "customer_id"

    @property
    def unread_field(self) -> str:
        return (
            "business_unread_count"
            if self is Role.BUSINESS
            else "customer_unread_count"
        )


class Session(BaseModel):
    """Opaque session handle issued by the auth layer."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    access_token: str
    role: Optional[Role] = None


# Rows
class Profile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    full_name: Optional[str] = None
    business_name: Optional[str] = None
    profile_photo_url: Optional[str] = None


class Conversation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    customer_id: str
    business_id: str
    last_message_at: Optional[datetime] = None
    last_message_preview: Optional[str] = None
    customer_unread_count: int = 0
    business_unread_count: int = 0

    def party_role(self, account_id: str) -> Optional[Role]:
        if account_id == self.customer_id:
            return Role.CUSTOMER
        if account_id == self.business_id:
            return Role.BUSINESS
        return None

    def counterpart_id(self, account_id: str) -> Optional[str]:
        if account_id == self.customer_id:
            return self.business_id
        if account_id == self.business_id:
            return self.customer_id
        return None

    def unread_for(self, role: Role) -> int:
        return max(0, int(getattr(self, role.unread_field) or 0))


class Message(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    conversation_id: str
    sender_id: str
    recipient_id: str
    body: str
    created_at: datetime
    read_at: Optional[datetime] = None


class ConversationSummary(BaseModel):
    """A conversation as seen by one party, decorated with the counterpart profile."""

    id: str
    customer_id: str
    business_id: str
    counterpart_id: str
    counterpart_name: str
    counterpart_avatar: str
    last_message_at: Optional[datetime] = None
    last_message_preview: Optional[str] = None
    unread_count: int = 0


# Send Messages
class SendMessageModel(BaseModel):
    conversation_id: str
    recipient_id: str
    body: str = Field(min_length=1, max_length=4000)

    @field_validator("body")
    @classmethod
    def body_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message body cannot be empty")
        return value


class SendMessageResponseModel(BaseModel):
    message: Message


# Direct conversations
class CreateDirectConversationModel(BaseModel):
    customer_id: str
    business_id: str


class CreateDirectConversationResponseModel(BaseModel):
    conversation_id: str


# Get Conversations
class GetConversationsResponseModel(BaseModel):
    conversations: List[ConversationSummary]


class GetConversationResponseModel(BaseModel):
    conversation: ConversationSummary


# Get messages
class GetMessagesResponseModel(BaseModel):
    messages: List[Message]
    has_more: bool


# Unread
class MarkReadResponseModel(BaseModel):
    conversation_id: str
    unread_count: int = 0


class UnreadTotalResponseModel(BaseModel):
    role: Role
    unread_total: int
