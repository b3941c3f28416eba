import pytest

from marketplace.database.access_rules import AccessGuardedStore
from marketplace.models.chat import ChatUser, FallbackInitData, ItemSnapshot
from marketplace.services.conversation_store import ConversationStore
from marketplace.test.fake_store import InMemoryDocumentStore, BUYER, SELLER, ITEM_ID


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def buyer():
    return ChatUser(uid=BUYER, display_name="Anna", email="anna@example.com")


@pytest.fixture
def seller():
    return ChatUser(uid=SELLER, display_name="Bo", email="bo@example.com")


@pytest.fixture
def bike():
    return ItemSnapshot(title="Bike", image_url="https://img/bike.jpg", sender_name="Anna", recipient_name="Bo")


@pytest.fixture
def bike_fallback():
    return FallbackInitData(
        recipient_id=SELLER,
        title="Bike",
        image_url="https://img/bike.jpg",
        sender_name="Anna",
        recipient_name="Bo",
    )


@pytest.fixture
def buyer_store(store):
    return ConversationStore(AccessGuardedStore(store, BUYER))


@pytest.fixture
def seller_store(store):
    return ConversationStore(AccessGuardedStore(store, SELLER))
