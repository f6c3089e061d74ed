from abc import ABC, abstractmethod
from typing import Optional

from notipay.models.user_model import User
from notipay.utils.firebase import firestore_run


class UserStore(ABC):
    """Read-only view of the user store."""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]: ...


class FirestoreUserStore(UserStore):
    def __init__(self, db, collection: str = "users", timeout: float = 5.0):
        self.db = db
        self.collection = collection
        self.timeout = timeout

    async def get_user(self, user_id: str) -> Optional[User]:
        doc = await firestore_run(self.db.collection(self.collection).document(user_id).get, timeout=self.timeout)
        if not doc.exists:
            return None
        data = doc.to_dict()
        data.setdefault("_id", doc.id)
        return User(**data)
