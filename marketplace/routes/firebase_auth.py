from fastapi import Header, HTTPException
from typing import Optional
from firebase_admin import auth
from marketplace.models.chat import ChatUser
import asyncio, logging

logger = logging.getLogger(__name__)

async def user_from_token(id_token: str) -> ChatUser:
    # verify_id_token may fetch signing keys over the network
    loop = asyncio.get_running_loop()
    decoded_token = await loop.run_in_executor(None, auth.verify_id_token, id_token)
    return ChatUser(
        uid=decoded_token["uid"],
        display_name=decoded_token.get("name"),
        email=decoded_token.get("email"),
    )

async def verify_token(authorization: Optional[str] = Header(None)) -> ChatUser:
    if not authorization or not authorization.startswith("Bearer "):
        logger.warning("Missing or invalid authorization header")
        raise HTTPException(status_code=401, detail="Missing or invalid authorization header")

    id_token = authorization.split(" ")[1]

    try:
        user = await user_from_token(id_token)
        logger.info(f"Token verified for user: {user.uid}")
        return user
    except Exception:
        logger.error("Token verification failed", exc_info=True)
        raise HTTPException(status_code=401, detail="Invalid or expired token")
