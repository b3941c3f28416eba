from pydantic_settings import BaseSettings
from typing import List, Optional

class Settings(BaseSettings):
    FIREBASE_KEY_PATH: Optional[str] = None
    FIREBASE_STORAGE_BUCKET: Optional[str] = None

    # used only when admin/config is missing in Firestore
    ADMIN_EMAILS: List[str] = []

    # chat subscriptions
    CHAT_MAX_RETRY_ATTEMPTS: int = 3
    CHAT_RETRY_BASE_DELAY: float = 1.0
    CHAT_RECONNECT_SETTLE_DELAY: float = 1.5
    CHAT_LOADING_TIMEOUT: float = 5.0
    FIRESTORE_WATCH_HEALTH_INTERVAL: float = 5.0

    class Config:
        env_file = ".env"

settings = Settings()
