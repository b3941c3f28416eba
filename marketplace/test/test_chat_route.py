import pytest
import pytest_asyncio
from typing import Optional
from fastapi import Header, HTTPException
from httpx import ASGITransport, AsyncClient

from main import app
from marketplace.database.access_rules import AccessGuardedStore
from marketplace.models.chat import ChatUser
from marketplace.routes.dependencies import get_session_registry, get_user_deletion_service
from marketplace.routes.firebase_auth import verify_token
from marketplace.services.chat_service import SessionRegistry
from marketplace.services.user_deletion import UserDeletionService
from marketplace.test.fake_store import settle, BUYER, SELLER, ITEM_ID

CONVERSATION_ID = "U1_U2_ITEM42"

USERS = {
    BUYER: ChatUser(uid=BUYER, display_name="Anna", email="anna@example.com"),
    SELLER: ChatUser(uid=SELLER, display_name="Bo", email="bo@example.com"),
    "U3": ChatUser(uid="U3", display_name="Cy", email="cy@example.com"),
}

BIKE_FALLBACK = {
    "recipientId": SELLER,
    "title": "Bike",
    "imageUrl": "https://img/bike.jpg",
    "senderName": "Anna",
    "recipientName": "Bo",
}


def auth(uid: str) -> dict:
    return {"Authorization": f"Bearer {uid}"}


async def token_is_uid(authorization: Optional[str] = Header(None)) -> ChatUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid authorization header")
    return USERS[authorization.split(" ")[1]]


@pytest_asyncio.fixture
async def api_client(store):
    registry = SessionRegistry(
        lambda uid, gate: AccessGuardedStore(store, uid, gate),
        base_delay=0.001,
        loading_timeout=0.05,
        settle_delay=0.01,
    )
    app.dependency_overrides[verify_token] = token_is_uid
    app.dependency_overrides[get_session_registry] = lambda: registry
    app.dependency_overrides[get_user_deletion_service] = lambda: UserDeletionService(store)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    await registry.close_all()
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_health(api_client):
    response = await api_client.get("/chat/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_requests_without_token_are_rejected(api_client):
    response = await api_client.get("/chat/conversations")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_first_message_creates_conversation_and_counts_unread(store, api_client):
    await api_client.get("/chat/conversations", headers=auth(SELLER))

    response = await api_client.post(
        f"/chat/conversations/{CONVERSATION_ID}/messages",
        json={"text": "  Is it still available?  ", "fallback": BIKE_FALLBACK},
        headers=auth(BUYER),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["conversationId"] == CONVERSATION_ID
    stored = store.docs[f"chats/{CONVERSATION_ID}/messages/{body['messageId']}"]
    assert stored["text"] == "Is it still available?"

    await settle()
    listing = (await api_client.get("/chat/conversations", headers=auth(SELLER))).json()
    assert listing["unreadCount"] == 1
    assert listing["loading"] is False
    assert [chat["id"] for chat in listing["chats"]] == [CONVERSATION_ID]
    assert listing["chats"][0]["otherUserName"] == "Anna"


@pytest.mark.asyncio
async def test_initialize_then_read_metadata(store, api_client):
    response = await api_client.post(
        "/chat/conversations",
        json={"otherUserId": SELLER, "itemId": ITEM_ID, "item": {"title": "Bike", "senderName": "Anna"}},
        headers=auth(BUYER),
    )
    assert response.status_code == 200
    assert response.json() == {"conversationId": CONVERSATION_ID}

    exists = await api_client.get(f"/chat/conversations/{CONVERSATION_ID}/exists", headers=auth(SELLER))
    assert exists.json()["exists"] is True

    details = await api_client.get(f"/chat/conversations/{CONVERSATION_ID}", headers=auth(SELLER))
    assert details.status_code == 200
    body = details.json()
    assert body["conversation"]["itemName"] == "Bike"
    assert body["conversation"]["participants"] == [BUYER, SELLER]
    assert body["itemDeleted"] is True

    store.seed(f"items/{ITEM_ID}", {"title": "Bike", "userId": SELLER})
    details = await api_client.get(f"/chat/conversations/{CONVERSATION_ID}", headers=auth(SELLER))
    assert details.json()["itemDeleted"] is False


@pytest.mark.asyncio
async def test_outsider_sees_not_found(api_client):
    await api_client.post(
        f"/chat/conversations/{CONVERSATION_ID}/messages",
        json={"text": "Hi", "fallback": BIKE_FALLBACK},
        headers=auth(BUYER),
    )

    details = await api_client.get(f"/chat/conversations/{CONVERSATION_ID}", headers=auth("U3"))
    assert details.status_code == 404

    exists = await api_client.get(f"/chat/conversations/{CONVERSATION_ID}/exists", headers=auth("U3"))
    assert exists.json()["exists"] is False

    send = await api_client.post(
        f"/chat/conversations/{CONVERSATION_ID}/messages", json={"text": "Hi"}, headers=auth("U3")
    )
    assert send.status_code == 403


@pytest.mark.asyncio
@pytest.mark.parametrize("payload, status_code", [
    ({"otherUserId": SELLER, "itemId": ITEM_ID, "item": {"title": ""}}, 400),
    ({"otherUserId": BUYER, "itemId": ITEM_ID, "item": {"title": "Bike"}}, 400),
    ({"otherUserId": SELLER, "itemId": ITEM_ID}, 422),
    ({"otherUserId": SELLER, "itemId": "bikes/ITEM42", "item": {"title": "Bike"}}, 400),
    ({"otherUserId": "U2/x", "itemId": ITEM_ID, "item": {"title": "Bike"}}, 400),
])
async def test_initialize_rejects_bad_input(api_client, payload, status_code):
    response = await api_client.post("/chat/conversations", json=payload, headers=auth(BUYER))
    assert response.status_code == status_code


@pytest.mark.asyncio
async def test_send_to_missing_conversation_without_fallback(api_client):
    response = await api_client.post(
        f"/chat/conversations/{CONVERSATION_ID}/messages", json={"text": "Hello?"}, headers=auth(BUYER)
    )
    assert response.status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   ", "x" * 501])
async def test_send_rejects_empty_or_long_text(api_client, text):
    response = await api_client.post(
        f"/chat/conversations/{CONVERSATION_ID}/messages",
        json={"text": text, "fallback": BIKE_FALLBACK},
        headers=auth(BUYER),
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_active_conversation_returns_its_messages(api_client):
    await api_client.post(
        f"/chat/conversations/{CONVERSATION_ID}/messages",
        json={"text": "Hi", "fallback": BIKE_FALLBACK},
        headers=auth(BUYER),
    )

    response = await api_client.put("/chat/active", json={"conversationId": CONVERSATION_ID}, headers=auth(SELLER))
    assert response.status_code == 200
    assert response.json()["conversationId"] == CONVERSATION_ID

    await settle()
    messages = (await api_client.get("/chat/messages", headers=auth(SELLER))).json()
    assert [m["text"] for m in messages["messages"]] == ["Hi"]
    assert messages["messages"][0]["senderId"] == BUYER

    listing = (await api_client.get("/chat/conversations", headers=auth(SELLER))).json()
    assert listing["unreadCount"] == 0


@pytest.mark.asyncio
async def test_connectivity_updates(api_client):
    offline = await api_client.put("/chat/connectivity", json={"online": False}, headers=auth(BUYER))
    assert offline.json() == {"state": "offline", "live": False}

    online = await api_client.put("/chat/connectivity", json={"online": True}, headers=auth(BUYER))
    assert online.json() == {"state": "connected", "live": True}


@pytest.mark.asyncio
async def test_offline_session_can_still_send(store, api_client):
    await api_client.put("/chat/connectivity", json={"online": False}, headers=auth(BUYER))

    response = await api_client.post(
        f"/chat/conversations/{CONVERSATION_ID}/messages",
        json={"text": "Sent while offline", "fallback": BIKE_FALLBACK},
        headers=auth(BUYER),
    )

    assert response.status_code == 200
    message_id = response.json()["messageId"]
    assert store.docs[f"chats/{CONVERSATION_ID}/messages/{message_id}"]["text"] == "Sent while offline"
    exists = await api_client.get(f"/chat/conversations/{CONVERSATION_ID}/exists", headers=auth(BUYER))
    assert exists.json()["exists"] is True


@pytest.mark.asyncio
async def test_logout_closes_the_session(api_client):
    await api_client.get("/chat/conversations", headers=auth(BUYER))

    response = await api_client.delete("/chat/session", headers=auth(BUYER))
    assert response.status_code == 200
    assert app.dependency_overrides[get_session_registry]().peek(BUYER) is None


@pytest.mark.asyncio
async def test_only_admins_delete_other_users(api_client):
    response = await api_client.post(f"/admin/users/{SELLER}/delete", headers=auth(BUYER))
    assert response.status_code == 403
