import pytest

from marketplace.utils.chat_id import derive_conversation_id, split_conversation_id, is_party_to
from marketplace.utils.exceptions import ChatValidationError


def test_same_id_for_either_party():
    assert derive_conversation_id("alice", "bob", "item1") == derive_conversation_id("bob", "alice", "item1")


def test_different_items_give_different_ids():
    assert derive_conversation_id("alice", "bob", "item1") != derive_conversation_id("alice", "bob", "item2")


def test_buyer_seller_scenario_id():
    assert derive_conversation_id("U2", "U1", "ITEM42") == "U1_U2_ITEM42"


def test_item_id_may_contain_separator():
    conversation_id = derive_conversation_id("bob", "alice", "old_item_7")
    assert conversation_id == "alice_bob_old_item_7"

    key = split_conversation_id(conversation_id)
    assert key.participants == ["alice", "bob"]
    assert key.item_id == "old_item_7"
    assert key.other("alice") == "bob"


@pytest.mark.parametrize("user_a, user_b, item_id", [
    ("", "bob", "item1"),
    ("alice", "", "item1"),
    ("alice", "bob", ""),
    ("ali_ce", "bob", "item1"),
    ("ali/ce", "bob", "item1"),
    ("alice", "bob", "item/1"),
    ("alice", "bob", "x/messages/y"),
])
def test_rejects_ambiguous_or_missing_parts(user_a, user_b, item_id):
    with pytest.raises(ChatValidationError):
        derive_conversation_id(user_a, user_b, item_id)


@pytest.mark.parametrize("conversation_id", ["", "alice", "alice_bob", "alice_bob_", "_bob_item", "alice_bob_x/messages/y"])
def test_split_rejects_malformed_ids(conversation_id):
    with pytest.raises(ChatValidationError):
        split_conversation_id(conversation_id)


def test_is_party_to():
    assert is_party_to("alice_bob_item1", "bob")
    assert not is_party_to("alice_bob_item1", "carol")
    assert not is_party_to("garbage", "alice")
