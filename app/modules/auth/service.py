import hashlib
import logging
import time
from supabase import AsyncClient
from app.config.settings import settings
from fastapi import HTTPException
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

# Verified users by token hash; chat sockets reconnect with the same token often
_AUTH_USER_CACHE: Dict[str, tuple] = {}
_AUTH_CACHE_MAX_SIZE = 500


def clear_auth_cache() -> None:
    _AUTH_USER_CACHE.clear()


def _cached_user(cache_key: str, now: float) -> Optional[Dict[str, Any]]:
    entry = _AUTH_USER_CACHE.get(cache_key)
    if entry is None:
        return None
    user_data, expiry = entry
    if now >= expiry:
        del _AUTH_USER_CACHE[cache_key]
        return None
    return user_data


def _remember_user(cache_key: str, user_data: Dict[str, Any], now: float) -> None:
    if len(_AUTH_USER_CACHE) >= _AUTH_CACHE_MAX_SIZE:
        # Drop expired entries before giving up on caching
        for key in [k for k, (_, expiry) in _AUTH_USER_CACHE.items() if expiry <= now]:
            del _AUTH_USER_CACHE[key]
    if len(_AUTH_USER_CACHE) < _AUTH_CACHE_MAX_SIZE:
        _AUTH_USER_CACHE[cache_key] = (user_data, now + settings.auth_cache_ttl_seconds)


class AuthService:
    def __init__(self, supabase: AsyncClient):
        self.supabase = supabase

    async def get_current_user(self, token: str) -> Dict[str, Any]:
        """Resolve a Supabase access token to {id, email, user_metadata}. Raises 401 when invalid."""
        cache_key = hashlib.sha256(token.encode()).hexdigest()
        now = time.monotonic()
        user_data = _cached_user(cache_key, now)
        if user_data is not None:
            return user_data

        try:
            user_response = await self.supabase.auth.get_user(jwt=token)
        except Exception as e:
            error_msg = str(e)
            logger.debug(f"Token verification failed: {error_msg}")
            if "JWT" in error_msg or "expired" in error_msg.lower() or "invalid" in error_msg.lower():
                raise HTTPException(status_code=401, detail="Invalid or expired token")
            raise HTTPException(status_code=401, detail="Authentication failed")
        if not user_response or not user_response.user:
            raise HTTPException(status_code=401, detail="Invalid or expired token")

        user = user_response.user
        user_data = {
            "id": user.id,
            "email": user.email,
            "user_metadata": user.user_metadata or {},
        }
        _remember_user(cache_key, user_data, now)
        return user_data
