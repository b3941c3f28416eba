import asyncio, logging
from typing import Callable, Dict, List, Optional, Set, Tuple
from marketplace.config.settings import settings
from marketplace.database.document_store import DocumentStore
from marketplace.models.chat import (
    ChatUser, Conversation, ConversationPointer, FallbackInitData, ItemSnapshot, Message
)
from marketplace.services.connectivity import ConnectivityMonitor, ConnectivityState, NetworkGate
from marketplace.services.conversation_store import ConversationStore
from marketplace.utils.chat_id import derive_conversation_id
from marketplace.utils.retry_subscription import RetryingSubscription
from marketplace.utils.unread import total_unread

logger = logging.getLogger(__name__)

CHATS_EVENT = "chats"
MESSAGES_EVENT = "messages"
CONNECTIVITY_EVENT = "connectivity"

SessionListener = Callable[[str], None]


class ChatSession:
    """
    Chat state of one logged-in user: their chat list with the total unread
    count, the active conversation and its messages, and the connectivity
    monitor. Only the session's own subscription callbacks mutate this
    state; callers read snapshots and get notified through listeners.
    """

    def __init__(
        self,
        user: ChatUser,
        conversations: ConversationStore,
        monitor: ConnectivityMonitor,
        max_attempts: int = settings.CHAT_MAX_RETRY_ATTEMPTS,
        base_delay: float = settings.CHAT_RETRY_BASE_DELAY,
        loading_timeout: float = settings.CHAT_LOADING_TIMEOUT,
    ):
        self.user = user
        self.conversations = conversations
        self.monitor = monitor
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.loading_timeout = loading_timeout

        self._chats: List[ConversationPointer] = []
        self._unread_count = 0
        self._loading = False
        self._active_conversation_id: Optional[str] = None
        self._messages: List[Message] = []

        self._chat_list: Optional[RetryingSubscription] = None
        self._message_feed: Optional[RetryingSubscription] = None
        self._loading_timer: Optional[asyncio.TimerHandle] = None
        self._listeners: List[SessionListener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._pending_reads: Set[str] = set()
        self._open_sockets = 0
        self._closed = False

    # ==================== Snapshots ====================

    @property
    def chats(self) -> Tuple[ConversationPointer, ...]:
        return tuple(self._chats)

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def unread_count(self) -> int:
        return self._unread_count

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def active_conversation_id(self) -> Optional[str]:
        return self._active_conversation_id

    @property
    def connectivity(self) -> ConnectivityState:
        return self.monitor.state

    @property
    def live(self) -> bool:
        return self.monitor.gate.enabled

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _emit(self, event: str):
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.error(f"Chat listener failed on {event}", exc_info=True)

    # ==================== Lifecycle ====================

    def start(self):
        if self._chat_list is not None:
            return

        uid = self.user.uid
        logger.info(f"Setting up chat subscription for user: {uid}")
        self._loading = True
        self._chat_list = RetryingSubscription(
            name=f"chat list {uid}",
            listen=lambda on_next, on_error: self.conversations.listen_pointers(uid, on_next, on_error),
            fetch=lambda: self.conversations.fetch_pointers(uid),
            on_update=self._on_chats,
            empty=list,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            gate=self.monitor.gate,
        )
        self._chat_list.start()

        if self._loading and self.loading_timeout > 0:
            loop = asyncio.get_running_loop()
            self._loading_timer = loop.call_later(self.loading_timeout, self._loading_timed_out)

    async def close(self):
        """Logout: tear down every subscription and forget all state."""
        self._closed = True
        if self._chat_list is not None:
            self._chat_list.cancel()
            self._chat_list = None
        if self._message_feed is not None:
            self._message_feed.cancel()
            self._message_feed = None
        if self._loading_timer is not None:
            self._loading_timer.cancel()
            self._loading_timer = None
        self.monitor.close()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._chats = []
        self._messages = []
        self._unread_count = 0
        self._loading = False
        self._active_conversation_id = None
        self._listeners.clear()
        logger.info(f"Chat session closed for user: {self.user.uid}")

    def _loading_timed_out(self):
        self._loading_timer = None
        if self._loading:
            logger.info("Chat subscription timeout, setting loading to false")
            self._loading = False
            self._emit(CHATS_EVENT)

    # ==================== Subscription callbacks ====================

    def _on_chats(self, pointers: List[ConversationPointer]):
        self._chats = list(pointers)
        self._unread_count = total_unread(self._chats)
        self._loading = False
        if self._loading_timer is not None:
            self._loading_timer.cancel()
            self._loading_timer = None
        logger.info(f"Chats loaded: {len(self._chats)} chats, {self._unread_count} unread")

        active = self._active_conversation_id
        if active and any(p.id == active and p.unread_count > 0 for p in self._chats):
            self._schedule_mark_read(active)

        self._emit(CHATS_EVENT)

    def _on_messages(self, conversation_id: str, messages: List[Message]):
        if conversation_id != self._active_conversation_id:
            return
        self._messages = list(messages)
        if self._messages and self._messages[-1].sender_id != self.user.uid:
            self._schedule_mark_read(conversation_id)
        self._emit(MESSAGES_EVENT)

    # ==================== Active conversation ====================

    async def set_active_conversation(self, conversation_id: Optional[str]):
        if conversation_id == self._active_conversation_id:
            return

        if self._message_feed is not None:
            self._message_feed.cancel()
            self._message_feed = None

        self._active_conversation_id = conversation_id
        self._messages = []
        self._emit(MESSAGES_EVENT)

        if not conversation_id:
            return

        logger.info(f"Subscribing to messages for chat: {conversation_id}")
        self._message_feed = RetryingSubscription(
            name=f"messages {conversation_id}",
            listen=lambda on_next, on_error: self.conversations.listen_messages(conversation_id, on_next, on_error),
            fetch=lambda: self.conversations.fetch_messages(conversation_id),
            on_update=lambda messages: self._on_messages(conversation_id, messages),
            empty=list,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            gate=self.monitor.gate,
        )
        self._message_feed.start()
        await self._mark_read_quietly(conversation_id)

    def _schedule_mark_read(self, conversation_id: str):
        if self._closed or conversation_id in self._pending_reads:
            return
        self._pending_reads.add(conversation_id)
        task = asyncio.get_running_loop().create_task(self._mark_read_quietly(conversation_id))
        self._tasks.add(task)

        def done(finished):
            self._tasks.discard(finished)
            self._pending_reads.discard(conversation_id)

        task.add_done_callback(done)

    async def _mark_read_quietly(self, conversation_id: str):
        try:
            await self.conversations.mark_read(self.user.uid, conversation_id)
        except Exception as e:
            logger.error(f"Error marking as read: {str(e)}")

    # ==================== Operations ====================

    def conversation_id_for(self, other_user_id: str, item_id: str) -> str:
        return derive_conversation_id(self.user.uid, other_user_id, item_id)

    async def initialize(self, other_user_id: str, item_id: str, item: ItemSnapshot) -> str:
        return await self.conversations.initialize(self.user.uid, other_user_id, item_id, item)

    async def send_message(self, conversation_id: str, text: str, fallback: Optional[FallbackInitData] = None) -> str:
        return await self.conversations.send_message(self.user, conversation_id, text, fallback)

    async def exists(self, conversation_id: str) -> bool:
        return await self.conversations.exists(conversation_id)

    async def get_metadata(self, conversation_id: str) -> Optional[Conversation]:
        return await self.conversations.get_metadata(conversation_id)

    async def item_exists(self, item_id: str) -> bool:
        return await self.conversations.item_exists(item_id)

    async def mark_read(self, conversation_id: str):
        await self.conversations.mark_read(self.user.uid, conversation_id)

    # ==================== Connectivity ====================

    def update_connectivity(self, online: Optional[bool] = None, visible: Optional[bool] = None):
        previous = self.monitor.state
        if online is True:
            self.monitor.handle_online()
        elif online is False:
            self.monitor.handle_offline()
        if visible is not None:
            self.monitor.handle_visibility(visible)
        if self.monitor.state != previous:
            self._emit(CONNECTIVITY_EVENT)

    @property
    def open_sockets(self) -> int:
        return self._open_sockets

    def socket_opened(self):
        """A live client connected; the first one brings the session online."""
        self._open_sockets += 1
        if self._open_sockets == 1:
            self.update_connectivity(online=True)

    def socket_closed(self):
        # other tabs of the same user keep the session live until the last one leaves
        self._open_sockets = max(0, self._open_sockets - 1)
        if self._open_sockets == 0:
            self.update_connectivity(online=False)


StoreFactory = Callable[[str, NetworkGate], DocumentStore]


class SessionRegistry:
    """One chat session per logged-in user id."""

    def __init__(self, store_factory: StoreFactory, **session_options):
        self.store_factory = store_factory
        self.session_options = session_options
        self.settle_delay = session_options.pop("settle_delay", settings.CHAT_RECONNECT_SETTLE_DELAY)
        self._sessions: Dict[str, ChatSession] = {}

    def peek(self, user_id: str) -> Optional[ChatSession]:
        return self._sessions.get(user_id)

    def get(self, user: ChatUser) -> ChatSession:
        session = self._sessions.get(user.uid)
        if session is not None:
            return session

        gate = NetworkGate()
        session = ChatSession(
            user,
            ConversationStore(self.store_factory(user.uid, gate)),
            ConnectivityMonitor(gate, self.settle_delay),
            **self.session_options,
        )
        self._sessions[user.uid] = session
        session.start()
        return session

    async def close(self, user_id: str):
        session = self._sessions.pop(user_id, None)
        if session is not None:
            await session.close()

    async def close_all(self):
        for user_id in list(self._sessions):
            await self.close(user_id)
