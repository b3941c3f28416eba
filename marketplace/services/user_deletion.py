import asyncio, logging
from firebase_admin import auth
from google.cloud import firestore
from typing import Dict, List, Optional
from marketplace.config.settings import settings
from marketplace.database.connection import (
    ADMIN, ADMIN_ACTIONS, BUG_REPORTS, CHATS, FLAGS, ITEMS, USERS
)
from marketplace.database.document_store import DocumentStore, Write
from marketplace.models.chat import ChatUser
from marketplace.services.conversation_store import messages_path, pointer_path, pointers_path
from marketplace.utils.exceptions import UserDeletionError

logger = logging.getLogger(__name__)

# Firestore rejects batches above 500 writes
BATCH_LIMIT = 400


class UserDeletionService:
    """
    Cascading account deletion. Removes the auth user, the profile, the
    user's listings, bug reports and flags, every conversation the user
    takes part in (messages and the counterpart's pointer included) and the
    user's own chat pointers, then records an audit entry.
    """

    def __init__(self, store: DocumentStore, auth_client=auth):
        self.store = store
        self.auth_client = auth_client

    async def delete_user(self, caller: Optional[ChatUser], target_user_id: str) -> Dict:
        if caller is None:
            raise UserDeletionError("unauthenticated", "User must be logged in")
        if not target_user_id:
            raise UserDeletionError("invalid-argument", "Target user ID is required")

        self_deletion = caller.uid == target_user_id
        if self_deletion:
            logger.info(f"User {caller.email} deleting their own account")
        elif await self._is_admin(caller):
            logger.info(f"Admin {caller.email} deleting user {target_user_id}")
        else:
            logger.warning(f"User {caller.uid} not allowed to delete {target_user_id}")
            raise UserDeletionError("permission-denied", "Only admins or the user themselves can delete accounts")

        try:
            user_data = await self.store.get(f"{USERS}/{target_user_id}")
            user_email = (user_data or {}).get("email", "Unknown")
            logger.info(f"Starting deletion process for user: {user_email} ({target_user_id})")

            await self._delete_auth_user(target_user_id)
            await self.store.delete(f"{USERS}/{target_user_id}")

            item_count = await self._delete_where(ITEMS, "userId", target_user_id)
            bug_report_count = await self._delete_where(BUG_REPORTS, "userId", target_user_id)
            flag_count = await self._delete_where(FLAGS, "reporterId", target_user_id)
            chat_count = await self._delete_conversations(target_user_id)

            own_pointers = await self.store.query(pointers_path(target_user_id))
            await self._delete_paths([pointer_path(target_user_id, doc.id) for doc in own_pointers])

            deleted_counts = {
                "items": item_count,
                "bugReports": bug_report_count,
                "flags": flag_count,
                "chats": chat_count,
            }

            await self.store.add(ADMIN_ACTIONS, {
                "action": "deleteUser",
                "adminEmail": caller.email,
                "adminUID": caller.uid,
                "targetUserId": target_user_id,
                "targetUserEmail": user_email,
                "timestamp": firestore.SERVER_TIMESTAMP,
                "details": {**deleted_counts, "selfDeletion": self_deletion},
            })

            logger.info(f"User deletion completed: {user_email} ({target_user_id}) {deleted_counts}")
            return {
                "success": True,
                "message": "User and all associated data deleted successfully",
                "deletedCounts": deleted_counts,
            }

        except UserDeletionError:
            raise
        except Exception as e:
            logger.error(f"Error during user deletion: {str(e)}", exc_info=True)
            raise UserDeletionError("internal", "Failed to delete user") from e

    async def _is_admin(self, caller: ChatUser) -> bool:
        if not caller.email:
            return False
        config = await self.store.get(f"{ADMIN}/config")
        admin_emails = config.get("adminEmails", []) if config else settings.ADMIN_EMAILS
        return caller.email in admin_emails

    async def _delete_auth_user(self, user_id: str):
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.auth_client.delete_user, user_id)
            logger.info(f"Deleted Firebase Auth user: {user_id}")
        except auth.UserNotFoundError as e:
            logger.warning(f"Auth user may not exist: {str(e)}")

    async def _delete_where(self, collection: str, field: str, user_id: str) -> int:
        docs = await self.store.query(collection, filters=[(field, "==", user_id)])
        await self._delete_paths([f"{collection}/{doc.id}" for doc in docs])
        if docs:
            logger.info(f"Deleted {len(docs)} documents from {collection}")
        return len(docs)

    async def _delete_conversations(self, user_id: str) -> int:
        chats = await self.store.query(CHATS, filters=[("participants", "array_contains", user_id)])
        for chat in chats:
            messages = await self.store.query(messages_path(chat.id))
            paths = [f"{messages_path(chat.id)}/{message.id}" for message in messages]
            for participant in chat.data.get("participants") or []:
                if participant != user_id:
                    paths.append(pointer_path(participant, chat.id))
            paths.append(f"{CHATS}/{chat.id}")
            await self._delete_paths(paths)

        if chats:
            logger.info(f"Deleted {len(chats)} chats")
        return len(chats)

    async def _delete_paths(self, paths: List[str]):
        for start in range(0, len(paths), BATCH_LIMIT):
            chunk = paths[start:start + BATCH_LIMIT]
            await self.store.commit([Write("delete", path) for path in chunk])
