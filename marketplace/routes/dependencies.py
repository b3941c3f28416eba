from fastapi import Depends
from marketplace.config.settings import settings
from marketplace.database.access_rules import AccessGuardedStore
from marketplace.database.connection import get_db
from marketplace.database.firestore_store import FirestoreDocumentStore
from marketplace.models.chat import ChatUser
from marketplace.routes.firebase_auth import verify_token
from marketplace.services.chat_service import ChatSession, SessionRegistry
from marketplace.services.user_deletion import UserDeletionService

_firestore_store = None
_registry = None


def get_firestore_store() -> FirestoreDocumentStore:
    global _firestore_store
    if _firestore_store is None:
        _firestore_store = FirestoreDocumentStore(get_db(), health_interval=settings.FIRESTORE_WATCH_HEALTH_INTERVAL)
    return _firestore_store


def get_session_registry() -> SessionRegistry:
    global _registry
    if _registry is None:
        shared = get_firestore_store()
        _registry = SessionRegistry(lambda uid, gate: AccessGuardedStore(shared, uid, gate))
    return _registry


async def shutdown_sessions():
    if _registry is not None:
        await _registry.close_all()


async def get_chat_session(
    user: ChatUser = Depends(verify_token),
    registry: SessionRegistry = Depends(get_session_registry),
) -> ChatSession:
    return registry.get(user)


def get_user_deletion_service() -> UserDeletionService:
    return UserDeletionService(get_firestore_store())
