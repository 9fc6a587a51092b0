"""Supabase backup store using the PostgREST and GoTrue HTTP APIs.

Expects a ``backups`` table with ``user_id`` (primary key), ``content`` and
an ``updated_at`` column maintained by the database.
"""

import asyncio
import json
import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import requests

from ..errors import TransientSyncError
from .base import RemoteBackupStore

logger = logging.getLogger(__name__)

# Refresh the access token this many seconds before it expires
EXPIRY_MARGIN_SECONDS = 60


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable Supabase timestamp: {value}")
        return None


class SupabaseBackupStore(RemoteBackupStore):
    """Keeps one backup row per user in a Supabase project.

    The session from ``authenticate()`` is cached in ``session_path`` so
    later processes reuse it; an expired access token is refreshed with the
    cached refresh token.
    """

    name = "supabase"
    TABLE = "backups"

    def __init__(
        self,
        url: Optional[str] = None,
        anon_key: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 15.0,
        session_path: Optional[Path] = None,
    ):
        self.url = (url or os.getenv("BUDGETR_SUPABASE_URL") or "").rstrip("/")
        self.anon_key = anon_key or os.getenv("BUDGETR_SUPABASE_ANON_KEY")
        self.email = email or os.getenv("BUDGETR_SUPABASE_EMAIL")
        self.password = password or os.getenv("BUDGETR_SUPABASE_PASSWORD")
        self.timeout = timeout
        self.session_path = session_path or Path.home() / ".budgetr" / "supabase_session.json"
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self.expires_at: Optional[float] = None
        self.user_id: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.anon_key)

    def _headers(self, **extra: str) -> dict[str, str]:
        headers = {"apikey": self.anon_key or "", "Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        headers.update(extra)
        return headers

    async def initialize(self, credential: Any = None) -> None:
        if isinstance(credential, dict):
            self.url = str(credential.get("url", self.url)).rstrip("/")
            self.anon_key = credential.get("anon_key", self.anon_key)
            self.email = credential.get("email", self.email)
            self.password = credential.get("password", self.password)

    # ------------------------------------------------------------ session cache

    def _apply_session(self, data: dict) -> bool:
        self.access_token = data.get("access_token")
        self.refresh_token = data.get("refresh_token")
        self.user_id = (data.get("user") or {}).get("id") or data.get("user_id")
        expires_at = data.get("expires_at")
        if expires_at is None and data.get("expires_in") is not None:
            expires_at = time.time() + float(data["expires_in"])
        self.expires_at = float(expires_at) if expires_at is not None else None
        return self.access_token is not None and self.user_id is not None

    def _clear_session(self) -> None:
        self.access_token = None
        self.refresh_token = None
        self.expires_at = None
        self.user_id = None

    def _save_session(self) -> None:
        self.session_path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "user_id": self.user_id,
        }
        temp_file = self.session_path.with_suffix(".tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(data, f)
        temp_file.replace(self.session_path)

    def _load_cached_session(self) -> None:
        """Restore the session saved by an earlier process, refreshing it if needed."""
        if not self.session_path.exists():
            return
        try:
            with open(self.session_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read Supabase session {self.session_path}: {e}")
            return
        if not isinstance(data, dict) or not self._apply_session(data):
            self._clear_session()
            return
        if self.expires_at is not None and time.time() >= self.expires_at - EXPIRY_MARGIN_SECONDS:
            self._refresh()

    def _refresh(self) -> bool:
        if not self.refresh_token:
            self._clear_session()
            return False
        response = requests.post(
            f"{self.url}/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": self.refresh_token},
            headers=self._headers(),
            timeout=self.timeout,
        )
        if response.status_code in (400, 401):
            logger.warning("Supabase session expired, please sign in again")
            self._clear_session()
            self.session_path.unlink(missing_ok=True)
            return False
        response.raise_for_status()
        if not self._apply_session(response.json()):
            self._clear_session()
            return False
        self._save_session()
        return True

    async def is_authenticated(self) -> bool:
        if self.access_token is None:
            try:
                await asyncio.to_thread(self._load_cached_session)
            except requests.RequestException as e:
                logger.warning(f"Supabase session refresh failed: {e}")
                return False
        return self.access_token is not None and self.user_id is not None

    def _sign_in(self) -> bool:
        if not self.is_configured or not self.email or not self.password:
            return False
        response = requests.post(
            f"{self.url}/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": self.email, "password": self.password},
            headers=self._headers(),
            timeout=self.timeout,
        )
        if response.status_code in (400, 401):
            logger.warning("Supabase sign-in rejected")
            return False
        response.raise_for_status()
        if not self._apply_session(response.json()):
            self._clear_session()
            return False
        self._save_session()
        return True

    async def authenticate(self) -> bool:
        try:
            return await asyncio.to_thread(self._sign_in)
        except requests.RequestException as e:
            raise TransientSyncError(f"Supabase sign-in failed: {e}") from e

    async def sign_out(self) -> None:
        if self.access_token:
            try:
                await asyncio.to_thread(
                    requests.post,
                    f"{self.url}/auth/v1/logout",
                    headers=self._headers(),
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                logger.warning(f"Supabase sign-out failed: {e}")
        self._clear_session()
        self.session_path.unlink(missing_ok=True)

    # ------------------------------------------------------------ backup row

    def _require_session(self) -> str:
        if not self.access_token or not self.user_id:
            raise TransientSyncError("Supabase not authenticated. Call authenticate() first.")
        return self.user_id

    def _select(self, columns: str) -> Optional[dict]:
        user_id = self._require_session()
        response = requests.get(
            f"{self.url}/rest/v1/{self.TABLE}",
            params={"user_id": f"eq.{user_id}", "select": columns},
            headers=self._headers(),
            timeout=self.timeout,
        )
        response.raise_for_status()
        rows = response.json()
        return rows[0] if rows else None

    def _upsert(self, content: str) -> Optional[datetime]:
        user_id = self._require_session()
        response = requests.post(
            f"{self.url}/rest/v1/{self.TABLE}",
            json={"user_id": user_id, "content": content},
            headers=self._headers(Prefer="resolution=merge-duplicates,return=representation"),
            timeout=self.timeout,
        )
        response.raise_for_status()
        rows = response.json()
        if isinstance(rows, list) and rows:
            return _parse_timestamp(rows[0].get("updated_at"))
        return None

    async def _call(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except requests.RequestException as e:
            raise TransientSyncError(f"Supabase request failed: {e}") from e

    async def download(self) -> Optional[str]:
        row = await self._call(self._select, "content")
        return row.get("content") if row else None

    async def upload(self, content: str) -> Optional[datetime]:
        return await self._call(self._upsert, content)

    async def get_last_modified_time(self) -> Optional[datetime]:
        row = await self._call(self._select, "updated_at")
        return _parse_timestamp(row.get("updated_at")) if row else None
