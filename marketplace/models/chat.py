# marketplace/models/chat.py

from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime

MAX_MESSAGE_LENGTH = 500


def _present(data: Dict[str, Any]) -> Dict[str, Any]:
    # Firestore returns explicit nulls for unset denormalized fields
    return {key: value for key, value in (data or {}).items() if value is not None and key != "id"}


# ==================== Stored Records ====================

class ItemSnapshot(BaseModel):
    """Listing details copied into a conversation when it is created"""
    title: str = ""
    image_url: str = Field("", alias="imageUrl")
    sender_name: Optional[str] = Field(None, alias="senderName")
    recipient_name: Optional[str] = Field(None, alias="recipientName")

    class Config:
        populate_by_name = True


class FallbackInitData(ItemSnapshot):
    """Sent with a first message so the conversation can be created on the fly"""
    recipient_id: str = Field(..., alias="recipientId")


class LastMessage(BaseModel):
    text: str = ""
    sender_id: str = Field("", alias="senderId")
    timestamp: Optional[datetime] = None

    class Config:
        populate_by_name = True


class Conversation(BaseModel):
    id: str
    item_id: str = Field(..., alias="itemId")
    item_name: str = Field("Unknown Item", alias="itemName")
    item_image: str = Field("", alias="itemImage")
    participants: List[str]
    user_names: Dict[str, str] = Field(default_factory=dict, alias="userNames")
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    last_message: Optional[LastMessage] = Field(None, alias="lastMessage")

    class Config:
        populate_by_name = True

    @field_validator("participants")
    @classmethod
    def exactly_two_participants(cls, value: List[str]) -> List[str]:
        if len(value) != 2 or value[0] == value[1] or not all(value):
            raise ValueError("A conversation has exactly two distinct participants")
        return value

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Conversation":
        return cls(id=doc_id, **_present(data))

    def other_participant(self, user_id: str) -> str:
        return next((pid for pid in self.participants if pid != user_id), "")

    def name_of(self, user_id: str, default: str = "Unknown") -> str:
        return self.user_names.get(user_id) or default


class ConversationPointer(BaseModel):
    """A user's entry in their own chat list (userChats/{uid}/chats/{conversationId})"""
    id: str
    other_user_id: str = Field("", alias="otherUserId")
    other_user_name: str = Field("Unknown", alias="otherUserName")
    item_id: str = Field("", alias="itemId")
    item_name: str = Field("", alias="itemName")
    item_image: str = Field("", alias="itemImage")
    last_message: str = Field("", alias="lastMessage")
    last_message_time: Optional[datetime] = Field(None, alias="lastMessageTime")
    unread_count: int = Field(0, alias="unreadCount")

    class Config:
        populate_by_name = True

    @field_validator("unread_count")
    @classmethod
    def never_negative(cls, value: int) -> int:
        return max(0, value)

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "ConversationPointer":
        return cls(id=doc_id, **_present(data))


class Message(BaseModel):
    id: str
    sender_id: str = Field(..., alias="senderId")
    text: str = ""
    timestamp: Optional[datetime] = None

    class Config:
        populate_by_name = True

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Message":
        return cls(id=doc_id, **_present(data))


class ChatUser(BaseModel):
    uid: str
    display_name: Optional[str] = None
    email: Optional[str] = None


# ==================== Requests ====================

class InitializeConversationRequest(BaseModel):
    other_user_id: str = Field(..., alias="otherUserId")
    item_id: str = Field(..., alias="itemId")
    item: ItemSnapshot

    class Config:
        populate_by_name = True


class SendMessageRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)
    fallback: Optional[FallbackInitData] = None

    @field_validator("text")
    @classmethod
    def not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Message text cannot be empty")
        return value


class SetActiveConversationRequest(BaseModel):
    conversation_id: Optional[str] = Field(None, alias="conversationId")

    class Config:
        populate_by_name = True


class ConnectivityUpdate(BaseModel):
    online: Optional[bool] = None
    visible: Optional[bool] = None


# ==================== Responses ====================

class ConversationCreatedResponse(BaseModel):
    conversation_id: str = Field(..., alias="conversationId")

    class Config:
        populate_by_name = True


class ConversationExistsResponse(BaseModel):
    conversation_id: str = Field(..., alias="conversationId")
    exists: bool

    class Config:
        populate_by_name = True


class ConversationMetadataResponse(BaseModel):
    conversation: Conversation
    item_deleted: bool = Field(False, alias="itemDeleted")

    class Config:
        populate_by_name = True


class ChatListResponse(BaseModel):
    chats: List[ConversationPointer]
    unread_count: int = Field(0, alias="unreadCount")
    loading: bool = False

    class Config:
        populate_by_name = True


class MessagesResponse(BaseModel):
    conversation_id: Optional[str] = Field(None, alias="conversationId")
    messages: List[Message]

    class Config:
        populate_by_name = True


class MessageSentResponse(BaseModel):
    conversation_id: str = Field(..., alias="conversationId")
    message_id: str = Field(..., alias="messageId")

    class Config:
        populate_by_name = True


class ConnectivityResponse(BaseModel):
    state: str
    live: bool
