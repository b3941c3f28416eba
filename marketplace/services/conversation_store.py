import logging
from google.cloud import firestore
from pydantic import ValidationError
from typing import Any, Callable, Dict, List, Optional
from marketplace.database.connection import CHATS, MESSAGES, USER_CHATS, ITEMS
from marketplace.database.document_store import DocumentStore, Document, ErrorCallback, Unsubscribe, Write
from marketplace.models.chat import ChatUser, Conversation, ConversationPointer, FallbackInitData, ItemSnapshot, Message
from marketplace.utils.chat_id import derive_conversation_id, split_conversation_id
from marketplace.utils.exceptions import (
    StoreError, ChatValidationError, ChatInitializationError, ConversationNotFoundError,
    MalformedRecordError, NotAuthenticatedError
)

logger = logging.getLogger(__name__)


def chat_path(conversation_id: str) -> str:
    return f"{CHATS}/{conversation_id}"

def messages_path(conversation_id: str) -> str:
    return f"{CHATS}/{conversation_id}/{MESSAGES}"

def pointers_path(user_id: str) -> str:
    return f"{USER_CHATS}/{user_id}/{CHATS}"

def pointer_path(user_id: str, conversation_id: str) -> str:
    return f"{pointers_path(user_id)}/{conversation_id}"


def _coerce(model, documents: List[Document]) -> list:
    records = []
    for doc in documents:
        try:
            records.append(model.from_document(doc.id, doc.data))
        except ValidationError as e:
            logger.warning(f"Skipping malformed {model.__name__} {doc.id}: {e.error_count()} error(s)")
    return records


def _well_formed(conversation_id: str) -> bool:
    try:
        split_conversation_id(conversation_id)
    except ChatValidationError:
        return False
    return True


class ConversationStore:
    """
    Reads and writes the three chat record families: the global conversation
    (chats/{id}), its append-only messages, and each participant's pointer
    in userChats/{uid}/chats.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    # ****************************************************
    #  Reads
    # ****************************************************

    async def exists(self, conversation_id: str) -> bool:
        if not _well_formed(conversation_id):
            return False
        try:
            return await self.store.get(chat_path(conversation_id)) is not None
        except StoreError as e:
            if e.is_permission_denied:
                # unauthorized callers must not learn about the conversation
                logger.info(f"Conversation {conversation_id} not visible, treating as missing")
                return False
            raise

    async def get_metadata(self, conversation_id: str) -> Optional[Conversation]:
        if not _well_formed(conversation_id):
            return None
        try:
            data = await self.store.get(chat_path(conversation_id))
        except StoreError as e:
            if e.is_permission_denied:
                logger.info(f"Conversation {conversation_id} not visible to caller")
                return None
            raise

        if data is None:
            return None
        return self._parse_conversation(conversation_id, data)

    async def get_pointer(self, user_id: str, conversation_id: str) -> Optional[ConversationPointer]:
        if not _well_formed(conversation_id):
            return None
        try:
            data = await self.store.get(pointer_path(user_id, conversation_id))
        except StoreError as e:
            if e.is_permission_denied:
                return None
            raise

        if data is None:
            return None
        try:
            return ConversationPointer.from_document(conversation_id, data)
        except ValidationError as e:
            raise MalformedRecordError(f"Malformed chat pointer {user_id}/{conversation_id}") from e

    async def item_exists(self, item_id: str) -> bool:
        """Listings can be deleted while conversations about them live on."""
        try:
            return await self.store.get(f"{ITEMS}/{item_id}") is not None
        except StoreError as e:
            if e.is_permission_denied:
                return False
            raise

    def _parse_conversation(self, conversation_id: str, data: Dict[str, Any]) -> Conversation:
        try:
            return Conversation.from_document(conversation_id, data)
        except ValidationError as e:
            raise MalformedRecordError(f"Malformed conversation {conversation_id}") from e

    # ****************************************************
    #  Writes
    # ****************************************************

    async def initialize(self, user_a: str, user_b: str, item_id: str, item: Optional[ItemSnapshot]) -> str:
        if not user_a or not user_b:
            raise ChatValidationError("Both participants are required")
        if user_a == user_b:
            raise ChatValidationError("A conversation needs two different users")
        if item is None or not (item.title or "").strip():
            raise ChatValidationError("Invalid item data provided")

        conversation_id = derive_conversation_id(user_a, user_b, item_id)
        path = chat_path(conversation_id)

        existing = await self.store.get(path)
        if existing is not None:
            conversation = self._parse_conversation(conversation_id, existing)
            await self._ensure_pointers(conversation)
            logger.info(f"Conversation already initialized: {conversation_id}")
            return conversation_id

        item_name = item.title.strip()
        item_image = item.image_url or ""
        sender_name = item.sender_name or "Unknown"
        recipient_name = item.recipient_name or "Unknown"

        conversation_data = {
            "itemId": item_id,
            "itemName": item_name,
            "itemImage": item_image,
            "participants": [user_a, user_b],
            "createdAt": firestore.SERVER_TIMESTAMP,
            "lastMessage": None,
            "userNames": {
                user_a: sender_name,
                user_b: recipient_name,
            },
        }

        def pointer(other_user_id: str, other_user_name: str) -> Dict[str, Any]:
            return {
                "itemId": item_id,
                "itemName": item_name,
                "itemImage": item_image,
                "otherUserId": other_user_id,
                "otherUserName": other_user_name,
                "lastMessage": "",
                "lastMessageTime": firestore.SERVER_TIMESTAMP,
                "unreadCount": 0,
            }

        # a conversation with fewer than two pointers is visibly inconsistent, so write all three at once
        await self.store.commit([
            Write("set", path, conversation_data),
            Write("set", pointer_path(user_a, conversation_id), pointer(user_b, recipient_name)),
            Write("set", pointer_path(user_b, conversation_id), pointer(user_a, sender_name)),
        ])

        created = await self.store.get(path)
        participants = (created or {}).get("participants") or []
        if created is None or user_a not in participants or user_b not in participants:
            logger.error(f"Conversation {conversation_id} not readable after creation")
            raise ChatInitializationError("Chat document was not created successfully")

        logger.info(f"Conversation initialized: {conversation_id}")
        return conversation_id

    async def _ensure_pointers(self, conversation: Conversation):
        for user_id in conversation.participants:
            path = pointer_path(user_id, conversation.id)
            if await self.store.get(path) is None:
                await self.store.set(path, self._synthesized_pointer(conversation, user_id))

    def _synthesized_pointer(self, conversation: Conversation, user_id: str) -> Dict[str, Any]:
        other_user_id = conversation.other_participant(user_id)
        last = conversation.last_message
        return {
            "itemId": conversation.item_id,
            "itemName": conversation.item_name,
            "itemImage": conversation.item_image,
            "otherUserId": other_user_id,
            "otherUserName": conversation.name_of(other_user_id, "Unknown User"),
            "lastMessage": last.text if last else "",
            "lastMessageTime": (last.timestamp if last and last.timestamp else firestore.SERVER_TIMESTAMP),
            "unreadCount": 0,
        }

    async def send_message(
        self,
        sender: Optional[ChatUser],
        conversation_id: str,
        text: str,
        fallback: Optional[FallbackInitData] = None,
    ) -> str:
        if sender is None or not sender.uid:
            raise NotAuthenticatedError("User must be logged in to send messages")
        if not text or not text.strip():
            raise ChatValidationError("Message text cannot be empty")

        key = split_conversation_id(conversation_id)
        path = chat_path(conversation_id)
        data = await self.store.get(path)

        if data is None and fallback is not None:
            if sender.uid not in key.participants or fallback.recipient_id != key.other(sender.uid):
                raise ChatValidationError("Recipient does not match the conversation")
            await self.initialize(sender.uid, fallback.recipient_id, key.item_id, fallback)
            data = await self.store.get(path)

        if data is None:
            raise ConversationNotFoundError("Chat document not available")

        conversation = self._parse_conversation(conversation_id, data)
        if sender.uid not in conversation.participants:
            raise ChatValidationError("Sender is not a participant of this conversation")

        # the message is the durable fact; everything after it is a best-effort cache
        message_id = await self.store.add(messages_path(conversation_id), {
            "senderId": sender.uid,
            "text": text,
            "timestamp": firestore.SERVER_TIMESTAMP,
        })
        logger.info(f"Message {message_id} appended to {conversation_id}")

        recipient_id = conversation.other_participant(sender.uid)
        item_fields = {
            "itemId": conversation.item_id,
            "itemName": conversation.item_name,
            "itemImage": conversation.item_image,
        }

        await self._best_effort("conversation preview", self.store.update, path, {
            "lastMessage": {
                "text": text,
                "timestamp": firestore.SERVER_TIMESTAMP,
                "senderId": sender.uid,
            }
        })

        await self._best_effort("sender chat pointer", self.store.set, pointer_path(sender.uid, conversation_id), {
            **item_fields,
            "otherUserId": recipient_id,
            "otherUserName": conversation.name_of(recipient_id),
            "lastMessage": text,
            "lastMessageTime": firestore.SERVER_TIMESTAMP,
            "unreadCount": 0,
        }, merge=True)

        await self._best_effort("recipient chat pointer", self.store.set, pointer_path(recipient_id, conversation_id), {
            **item_fields,
            "otherUserId": sender.uid,
            "otherUserName": conversation.name_of(sender.uid),
            "lastMessage": text,
            "lastMessageTime": firestore.SERVER_TIMESTAMP,
            "unreadCount": firestore.Increment(1),
        }, merge=True)

        return message_id

    async def _best_effort(self, description: str, write, *args, **kwargs):
        try:
            await write(*args, **kwargs)
        except Exception as e:
            # Don't fail the send if a denormalized copy could not be updated
            logger.warning(f"Could not update {description}: {str(e)}")

    async def mark_read(self, user_id: str, conversation_id: str):
        if not user_id or not _well_formed(conversation_id):
            return

        path = pointer_path(user_id, conversation_id)
        try:
            if await self.store.get(path) is not None:
                await self.store.set(path, {"unreadCount": 0}, merge=True)
                return

            conversation = await self.get_metadata(conversation_id)
            if conversation is None:
                logger.info(f"Nothing to mark read, conversation {conversation_id} does not exist")
                return

            logger.info(f"Chat pointer missing for {user_id}, creating it from {conversation_id}")
            await self.store.set(path, self._synthesized_pointer(conversation, user_id))
        except StoreError as e:
            if e.is_permission_denied:
                logger.info(f"Conversation {conversation_id} not visible to {user_id}, skipping mark read")
                return
            raise

    # ****************************************************
    #  Listings
    # ****************************************************

    def listen_pointers(
        self,
        user_id: str,
        on_next: Callable[[List[ConversationPointer]], None],
        on_error: ErrorCallback,
    ) -> Unsubscribe:
        return self.store.subscribe(
            pointers_path(user_id),
            lambda docs: on_next(_coerce(ConversationPointer, docs)),
            on_error,
            order_by="lastMessageTime",
            descending=True,
        )

    async def fetch_pointers(self, user_id: str) -> List[ConversationPointer]:
        docs = await self.store.query(pointers_path(user_id), order_by="lastMessageTime", descending=True)
        return _coerce(ConversationPointer, docs)

    def listen_messages(
        self,
        conversation_id: str,
        on_next: Callable[[List[Message]], None],
        on_error: ErrorCallback,
    ) -> Unsubscribe:
        split_conversation_id(conversation_id)
        return self.store.subscribe(
            messages_path(conversation_id),
            lambda docs: on_next(_coerce(Message, docs)),
            on_error,
            order_by="timestamp",
        )

    async def fetch_messages(self, conversation_id: str) -> List[Message]:
        split_conversation_id(conversation_id)
        docs = await self.store.query(messages_path(conversation_id), order_by="timestamp")
        return _coerce(Message, docs)
