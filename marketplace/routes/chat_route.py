# marketplace/routes/chat_route.py

from fastapi import APIRouter, HTTPException, status, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from marketplace.models.chat import (
    ChatListResponse, ChatUser, ConnectivityResponse, ConnectivityUpdate, ConversationCreatedResponse,
    ConversationExistsResponse, ConversationMetadataResponse, InitializeConversationRequest,
    MessageSentResponse, MessagesResponse, SendMessageRequest, SetActiveConversationRequest
)
from marketplace.routes.dependencies import get_chat_session, get_session_registry
from marketplace.routes.firebase_auth import user_from_token, verify_token
from marketplace.services.chat_service import (
    ChatSession, SessionRegistry, CHATS_EVENT, MESSAGES_EVENT, CONNECTIVITY_EVENT
)
from marketplace.utils.exceptions import (
    StoreError, ChatValidationError, ConversationNotFoundError, NotAuthenticatedError
)
import asyncio, logging

logger = logging.getLogger(__name__)
router = APIRouter()


def raise_http_error(e: Exception, action: str):
    """Translate chat failures without leaking store internals to the client"""
    if isinstance(e, HTTPException):
        raise e
    if isinstance(e, ChatValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, NotAuthenticatedError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    if isinstance(e, ConversationNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    if isinstance(e, StoreError) and e.is_permission_denied:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not a participant in this conversation"
        )

    logger.error(f"Error {action}: {str(e)}", exc_info=True)
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Error {action}"
    )


def chat_list_response(session: ChatSession) -> ChatListResponse:
    return ChatListResponse(
        chats=list(session.chats),
        unread_count=session.unread_count,
        loading=session.loading
    )


def messages_response(session: ChatSession) -> MessagesResponse:
    return MessagesResponse(
        conversation_id=session.active_conversation_id,
        messages=list(session.messages)
    )


def connectivity_response(session: ChatSession) -> ConnectivityResponse:
    return ConnectivityResponse(state=session.connectivity.value, live=session.live)


# ==================== Conversation Routes ====================

@router.post("/conversations", response_model=ConversationCreatedResponse)
async def initialize_conversation(
    request: InitializeConversationRequest,
    session: ChatSession = Depends(get_chat_session)
):
    """
    Create the conversation between the current user and another user about
    one listing, together with both users' chat list entries
    """
    try:
        conversation_id = await session.initialize(request.other_user_id, request.item_id, request.item)
        return ConversationCreatedResponse(conversation_id=conversation_id)
    except Exception as e:
        raise_http_error(e, "creating conversation")


@router.get("/conversations", response_model=ChatListResponse)
async def get_user_conversations(session: ChatSession = Depends(get_chat_session)):
    return chat_list_response(session)


@router.get("/conversations/{conversation_id}", response_model=ConversationMetadataResponse)
async def get_conversation_details(
    conversation_id: str,
    session: ChatSession = Depends(get_chat_session)
):
    """
    Conversation metadata. Conversations the caller cannot see are reported
    as not found. The listing snapshot is kept even when the listing itself
    has been deleted; itemDeleted tells the client which case it is.
    """
    try:
        conversation = await session.get_metadata(conversation_id)
        if conversation is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Conversation not found"
            )

        try:
            item_deleted = not await session.item_exists(conversation.item_id)
        except StoreError as e:
            logger.warning(f"Could not check listing {conversation.item_id}: {str(e)}")
            item_deleted = False

        return ConversationMetadataResponse(conversation=conversation, item_deleted=item_deleted)

    except Exception as e:
        raise_http_error(e, "fetching conversation")


@router.get("/conversations/{conversation_id}/exists", response_model=ConversationExistsResponse)
async def check_conversation_exists(
    conversation_id: str,
    session: ChatSession = Depends(get_chat_session)
):
    try:
        exists = await session.exists(conversation_id)
        return ConversationExistsResponse(conversation_id=conversation_id, exists=exists)
    except Exception as e:
        raise_http_error(e, "checking conversation")


@router.post("/conversations/{conversation_id}/messages", response_model=MessageSentResponse)
async def send_message(
    conversation_id: str,
    request: SendMessageRequest,
    session: ChatSession = Depends(get_chat_session)
):
    """
    Append a message. With fallback data the conversation is created first
    when it does not exist yet.
    """
    try:
        message_id = await session.send_message(conversation_id, request.text, request.fallback)
        return MessageSentResponse(conversation_id=conversation_id, message_id=message_id)
    except Exception as e:
        raise_http_error(e, "sending message")


@router.post("/conversations/{conversation_id}/read")
async def mark_conversation_read(
    conversation_id: str,
    session: ChatSession = Depends(get_chat_session)
):
    try:
        await session.mark_read(conversation_id)
        return {"success": True, "conversationId": conversation_id}
    except Exception as e:
        raise_http_error(e, "marking conversation as read")


# ==================== Active Conversation Routes ====================

@router.put("/active", response_model=MessagesResponse)
async def set_active_conversation(
    request: SetActiveConversationRequest,
    session: ChatSession = Depends(get_chat_session)
):
    await session.set_active_conversation(request.conversation_id)
    return messages_response(session)


@router.get("/messages", response_model=MessagesResponse)
async def get_active_messages(session: ChatSession = Depends(get_chat_session)):
    return messages_response(session)


# ==================== Session Routes ====================

@router.put("/connectivity", response_model=ConnectivityResponse)
async def update_connectivity(
    update: ConnectivityUpdate,
    session: ChatSession = Depends(get_chat_session)
):
    """
    Browser online/offline and visibility changes. Live updates are paused
    while the client is offline or in the background.
    """
    session.update_connectivity(online=update.online, visible=update.visible)
    return connectivity_response(session)


@router.delete("/session")
async def close_chat_session(
    user: ChatUser = Depends(verify_token),
    registry: SessionRegistry = Depends(get_session_registry)
):
    """Called on logout"""
    await registry.close(user.uid)
    return {"success": True, "message": "Chat session closed"}


# ==================== Live Updates ====================

def event_payload(session: ChatSession, event: str) -> dict:
    if event == CHATS_EVENT:
        return {"type": CHATS_EVENT, **jsonable_encoder(chat_list_response(session))}
    if event == MESSAGES_EVENT:
        return {"type": MESSAGES_EVENT, **jsonable_encoder(messages_response(session))}
    return {"type": CONNECTIVITY_EVENT, **jsonable_encoder(connectivity_response(session))}


async def push_events(websocket: WebSocket, session: ChatSession, queue: asyncio.Queue):
    while True:
        event = await queue.get()
        await websocket.send_json(event_payload(session, event))


async def handle_client_event(session: ChatSession, data):
    if not isinstance(data, dict):
        logger.warning(f"Ignoring chat event that is not an object: {type(data).__name__}")
        return

    event_type = data.get("type")
    if event_type == "active":
        await session.set_active_conversation(data.get("conversationId"))
    elif event_type == "connectivity":
        session.update_connectivity(online=data.get("online"), visible=data.get("visible"))
    else:
        logger.warning(f"Ignoring unknown chat event: {event_type}")


@router.websocket("/ws")
async def chat_socket(
    websocket: WebSocket,
    token: str = Query(...),
    registry: SessionRegistry = Depends(get_session_registry)
):
    try:
        user = await user_from_token(token)
    except Exception:
        logger.warning("Rejected chat socket with invalid token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    session = registry.get(user)

    queue: asyncio.Queue = asyncio.Queue()
    remove_listener = session.add_listener(queue.put_nowait)
    session.socket_opened()
    for event in (CHATS_EVENT, MESSAGES_EVENT, CONNECTIVITY_EVENT):
        queue.put_nowait(event)

    sender = asyncio.create_task(push_events(websocket, session, queue))
    try:
        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                logger.warning(f"Ignoring malformed chat event from user: {user.uid}")
                continue
            await handle_client_event(session, data)
    except WebSocketDisconnect:
        logger.info(f"Chat socket closed for user: {user.uid}")
    finally:
        remove_listener()
        sender.cancel()
        session.socket_closed()


# ==================== Health Check ====================

@router.get("/health")
async def chat_health_check():
    """Check if chat service is running"""
    return {
        "status": "healthy",
        "service": "chat",
        "message": "Chat service is running"
    }
