"""Google Drive backup store."""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaInMemoryUpload

from ..errors import TransientSyncError
from .base import RemoteBackupStore

logger = logging.getLogger(__name__)

BACKUP_FILENAME = "budgetr-backup.json"


def _parse_modified_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable Drive modifiedTime: {value}")
        return None


class GoogleDriveBackupStore(RemoteBackupStore):
    """Keeps the backup as a single JSON file in the user's Drive."""

    name = "google_drive"
    SCOPES = ["https://www.googleapis.com/auth/drive.file"]

    def __init__(
        self,
        credentials_path: Optional[Path] = None,
        token_path: Optional[Path] = None,
        backup_filename: str = BACKUP_FILENAME,
    ):
        """Initialize the store.

        Args:
            credentials_path: OAuth client credentials JSON downloaded from Google Cloud Console
            token_path: Where the authorized user token is cached
            backup_filename: Name of the backup file in Drive
        """
        self.credentials_path = credentials_path or Path.home() / ".budgetr" / "google_credentials.json"
        self.token_path = token_path or Path.home() / ".budgetr" / "google_token.json"
        self.backup_filename = backup_filename
        self.service = None
        self._creds: Optional[Credentials] = None

    @property
    def is_configured(self) -> bool:
        return self.credentials_path.exists() or self.token_path.exists()

    async def initialize(self, credential: Any = None) -> None:
        if credential is not None:
            self.credentials_path = Path(credential).expanduser()
        await asyncio.to_thread(self._load_cached_credentials)

    def _load_cached_credentials(self) -> None:
        """Build the service from a cached token, refreshing it if needed."""
        if not self.token_path.exists():
            return
        creds = Credentials.from_authorized_user_file(str(self.token_path), self.SCOPES)
        if not creds.valid and creds.expired and creds.refresh_token:
            try:
                creds.refresh(Request())
            except GoogleAuthError as e:
                logger.warning(f"Google token refresh failed: {e}")
                return
            self._save_token(creds)
        if creds.valid:
            self._creds = creds
            self.service = build("drive", "v3", credentials=creds, cache_discovery=False)

    def _save_token(self, creds: Credentials) -> None:
        self.token_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.token_path, "w") as token:
            token.write(creds.to_json())

    def _run_flow(self) -> bool:
        if not self.credentials_path.exists():
            raise FileNotFoundError(
                f"Google credentials not found at {self.credentials_path}. "
                "Please download OAuth client credentials from Google Cloud Console "
                "and save them there"
            )
        flow = InstalledAppFlow.from_client_secrets_file(str(self.credentials_path), self.SCOPES)
        creds = flow.run_local_server(port=0)
        self._save_token(creds)
        self._creds = creds
        self.service = build("drive", "v3", credentials=creds, cache_discovery=False)
        return True

    async def is_authenticated(self) -> bool:
        if self.service is None:
            await asyncio.to_thread(self._load_cached_credentials)
        return self.service is not None and self._creds is not None and self._creds.valid

    async def authenticate(self) -> bool:
        if await self.is_authenticated():
            return True
        return await asyncio.to_thread(self._run_flow)

    async def sign_out(self) -> None:
        self.service = None
        self._creds = None
        self.token_path.unlink(missing_ok=True)

    # ------------------------------------------------------------ drive calls

    def _require_service(self):
        if not self.service:
            raise TransientSyncError("Google Drive not authenticated. Call authenticate() first.")
        return self.service

    def _find_backup(self) -> Optional[dict]:
        service = self._require_service()
        query = f"name='{self.backup_filename}' and trashed=false"
        results = service.files().list(
            q=query,
            spaces="drive",
            fields="files(id,name,modifiedTime)",
            orderBy="modifiedTime desc",
            pageSize=1,
        ).execute()
        files = results.get("files", [])
        return files[0] if files else None

    def _download(self) -> Optional[str]:
        backup = self._find_backup()
        if backup is None:
            return None
        data = self._require_service().files().get_media(fileId=backup["id"]).execute()
        if isinstance(data, bytes):
            return data.decode("utf-8")
        return data

    def _upload(self, content: str) -> Optional[datetime]:
        service = self._require_service()
        media = MediaInMemoryUpload(content.encode("utf-8"), mimetype="application/json")
        backup = self._find_backup()
        if backup is None:
            result = service.files().create(
                body={"name": self.backup_filename, "mimeType": "application/json"},
                media_body=media,
                fields="id,name,modifiedTime",
            ).execute()
        else:
            result = service.files().update(
                fileId=backup["id"],
                media_body=media,
                fields="id,name,modifiedTime",
            ).execute()
        return _parse_modified_time(result.get("modifiedTime"))

    def _last_modified(self) -> Optional[datetime]:
        backup = self._find_backup()
        if backup is None:
            return None
        return _parse_modified_time(backup.get("modifiedTime"))

    async def _call(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except HttpError as error:
            raise TransientSyncError(f"Google Drive request failed: {error}") from error
        except (GoogleAuthError, OSError) as error:
            raise TransientSyncError(f"Google Drive unavailable: {error}") from error

    async def download(self) -> Optional[str]:
        return await self._call(self._download)

    async def upload(self, content: str) -> Optional[datetime]:
        return await self._call(self._upload, content)

    async def get_last_modified_time(self) -> Optional[datetime]:
        return await self._call(self._last_modified)
