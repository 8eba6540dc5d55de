from app.database.store import DataStore
from app.modules.profiles.schemas import ProfileResponse
from app.database.tables import PROFILES
from typing import Dict, Iterable, Optional


class ProfileService:
    def __init__(self, store: DataStore):
        self.store = store

    async def get_profile(self, user_id: str) -> Optional[ProfileResponse]:
        row = await self.store.get_one(PROFILES, {"user_id": user_id})
        return ProfileResponse(**row) if row else None

    async def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, ProfileResponse]:
        """Map user_id -> profile for the given users; unknown ids are absent."""
        ids = list(dict.fromkeys(u for u in user_ids if u))
        if not ids:
            return {}
        rows = await self.store.query(PROFILES, {"user_id": ids})
        return {row["user_id"]: ProfileResponse(**row) for row in rows}
