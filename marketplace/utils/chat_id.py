from typing import NamedTuple
from marketplace.utils.exceptions import ChatValidationError

SEPARATOR = "_"
# ids become document path segments
PATH_DELIMITER = "/"


class ConversationKey(NamedTuple):
    user_a: str
    user_b: str
    item_id: str

    @property
    def participants(self):
        return [self.user_a, self.user_b]

    def other(self, user_id: str) -> str:
        return self.user_b if user_id == self.user_a else self.user_a


def validate_user_id(user_id: str):
    if not user_id:
        raise ChatValidationError("User id is required")
    if SEPARATOR in user_id:
        # user ids are the fixed-position head of a conversation id
        raise ChatValidationError(f"User id must not contain '{SEPARATOR}'")
    if PATH_DELIMITER in user_id:
        raise ChatValidationError(f"User id must not contain '{PATH_DELIMITER}'")


def validate_item_id(item_id: str):
    if not item_id:
        raise ChatValidationError("Item id is required")
    if PATH_DELIMITER in item_id:
        raise ChatValidationError(f"Item id must not contain '{PATH_DELIMITER}'")


def derive_conversation_id(user_a: str, user_b: str, item_id: str) -> str:
    """
    Stable id for the conversation between two users about one listing.
    The users are sorted so either party derives the same id; the item id
    is appended verbatim and may itself contain the separator.
    """
    validate_user_id(user_a)
    validate_user_id(user_b)
    validate_item_id(item_id)

    sorted_users = sorted([user_a, user_b])
    return f"{SEPARATOR.join(sorted_users)}{SEPARATOR}{item_id}"


def split_conversation_id(conversation_id: str) -> ConversationKey:
    if PATH_DELIMITER in (conversation_id or ""):
        raise ChatValidationError(f"Malformed conversation id: {conversation_id}")

    parts = (conversation_id or "").split(SEPARATOR)
    if len(parts) < 3 or not all(parts[:2]):
        raise ChatValidationError(f"Malformed conversation id: {conversation_id}")

    item_id = SEPARATOR.join(parts[2:])
    if not item_id:
        raise ChatValidationError(f"Malformed conversation id: {conversation_id}")

    return ConversationKey(parts[0], parts[1], item_id)


def is_party_to(conversation_id: str, user_id: str) -> bool:
    try:
        key = split_conversation_id(conversation_id)
    except ChatValidationError:
        return False
    return user_id in (key.user_a, key.user_b)
