import firebase_admin, os, json
from firebase_admin import credentials, firestore
from marketplace.config.settings import settings

# collection names shared with the web client and the user deletion routine
CHATS = "chats"
MESSAGES = "messages"
USER_CHATS = "userChats"
ITEMS = "items"
USERS = "users"
BUG_REPORTS = "bugReports"
FLAGS = "flags"
ADMIN = "admin"
ADMIN_ACTIONS = "adminActions"

_db = None

def initialize_firebase():
    if firebase_admin._apps:
        return

    firebase_json = os.getenv("FIREBASE_JSON")
    if firebase_json:
        # Running on a host that injects the service account as an env var
        cred_dict = json.loads(firebase_json)
        cred = credentials.Certificate(cred_dict)

    elif settings.FIREBASE_KEY_PATH:
        # Running LOCALLY → load from file
        cred = credentials.Certificate(settings.FIREBASE_KEY_PATH)

    else:
        cred = credentials.ApplicationDefault()

    options = {}
    if settings.FIREBASE_STORAGE_BUCKET:
        options["storageBucket"] = settings.FIREBASE_STORAGE_BUCKET

    firebase_admin.initialize_app(cred, options)


def get_db():
    """Firestore client, initialising the Firebase app on first use."""
    global _db
    if _db is None:
        initialize_firebase()
        _db = firestore.client()
    return _db
