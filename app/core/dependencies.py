"""
Core dependencies for route protection and store access
"""

from fastapi import Depends, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from app.database.supabase_client import get_supabase
from app.database.store import DataStore, SupabaseStore
from app.modules.auth.service import AuthService
from supabase import AsyncClient
from typing import Dict, Any
import logging

logger = logging.getLogger(__name__)

security = HTTPBearer()


def get_auth_service(supabase: AsyncClient = Depends(get_supabase)) -> AuthService:
    return AuthService(supabase)


def get_store(supabase: AsyncClient = Depends(get_supabase)) -> DataStore:
    return SupabaseStore(supabase)


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Security(security),
    auth_service: AuthService = Depends(get_auth_service)
) -> Dict[str, Any]:
    """Extract current user info from JWT token"""
    token = credentials.credentials
    return await auth_service.get_current_user(token)
