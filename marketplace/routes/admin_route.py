from fastapi import APIRouter, HTTPException, status, Depends
from marketplace.models.chat import ChatUser
from marketplace.routes.dependencies import get_user_deletion_service
from marketplace.routes.firebase_auth import verify_token
from marketplace.services.user_deletion import UserDeletionService
from marketplace.utils.exceptions import UserDeletionError
import logging

logger = logging.getLogger(__name__)
router = APIRouter()

_STATUS_CODES = {
    "unauthenticated": status.HTTP_401_UNAUTHORIZED,
    "invalid-argument": status.HTTP_400_BAD_REQUEST,
    "permission-denied": status.HTTP_403_FORBIDDEN,
}


@router.post("/users/{target_user_id}/delete")
async def delete_user(
    target_user_id: str,
    current_user: ChatUser = Depends(verify_token),
    service: UserDeletionService = Depends(get_user_deletion_service)
):
    """
    Delete an account and everything that belongs to it.
    Users may delete themselves; admins may delete anyone.
    """
    try:
        return await service.delete_user(current_user, target_user_id)
    except UserDeletionError as e:
        raise HTTPException(
            status_code=_STATUS_CODES.get(e.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
            detail=str(e)
        )
