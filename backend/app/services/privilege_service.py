from app.db.datastore import SqlAlchemyDatastore
from app.db.models import UserProfile


class PrivilegeService:
    def __init__(self, datastore: SqlAlchemyDatastore) -> None:
        self._datastore = datastore

    def is_elevated(self, email: str | None) -> bool:
        normalized = (email or "").strip().lower()
        if not normalized:
            return False
        profile = self._datastore.find(UserProfile, email=normalized)
        return bool(profile and profile.is_admin)
