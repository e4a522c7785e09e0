import hashlib
import logging
import time
from supabase import Client
from fastapi import HTTPException
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

SUPER_USER_TYPES = {"super_user", "super_admin"}

OPERATOR_CACHE_TTL_SEC = 60
OPERATOR_CACHE_MAX_SIZE = 500


class OperatorCache:
    """Short-lived token -> operator map so dashboards polling many jobs do not hit Supabase Auth each time"""

    def __init__(self, ttl: float = OPERATOR_CACHE_TTL_SEC, max_size: int = OPERATOR_CACHE_MAX_SIZE):
        self.ttl = ttl
        self.max_size = max_size
        self._entries: Dict[str, tuple] = {}

    @staticmethod
    def _key(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    def get(self, token: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(self._key(token))
        if entry is None:
            return None
        operator, expires_at = entry
        if time.monotonic() >= expires_at:
            self._entries.pop(self._key(token), None)
            return None
        return operator

    def put(self, token: str, operator: Dict[str, Any]) -> None:
        if len(self._entries) >= self.max_size:
            return
        self._entries[self._key(token)] = (operator, time.monotonic() + self.ttl)


_operator_cache = OperatorCache()


class AuthService:
    """Resolves operators from Supabase Auth bearer tokens. Sign-in itself happens in the blog dashboard."""

    def __init__(self, supabase: Client, cache: OperatorCache = None):
        self.supabase = supabase
        self.cache = cache if cache is not None else _operator_cache

    def get_current_user(self, token: str) -> Dict[str, Any]:
        operator = self.cache.get(token)
        if operator is not None:
            return operator

        try:
            response = self.supabase.auth.get_user(jwt=token)
        except Exception as e:
            logger.warning(f"Supabase rejected operator token: {str(e)}")
            raise HTTPException(status_code=401, detail={"code": "UNAUTHORIZED", "message": "Invalid or expired token"})

        user = response.user if response else None
        if user is None:
            raise HTTPException(status_code=401, detail={"code": "UNAUTHORIZED", "message": "Invalid or expired token"})

        operator = {
            "id": user.id,
            "email": user.email,
            "app_metadata": user.app_metadata or {},
        }
        self.cache.put(token, operator)
        return operator


def is_super_user(user_data: dict) -> bool:
    """app_metadata is set server-side and cannot be modified by users"""
    app_metadata = user_data.get("app_metadata") or {}
    return app_metadata.get("type") in SUPER_USER_TYPES
