"""Configuration management for Budgetr."""

import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field

try:
    import tomllib  # Python 3.11+
except ImportError:
    import tomli as tomllib  # Python < 3.11


def _find_repo_root(start_dir: Path) -> Path:
    """Find repository root by walking upward looking for .git or pyproject.toml."""
    current_dir = start_dir

    while True:
        if (current_dir / ".git").exists() or (current_dir / "pyproject.toml").exists():
            return current_dir

        parent_dir = current_dir.parent
        if parent_dir == current_dir:
            return start_dir

        current_dir = parent_dir


def _load_repo_config_data(repo_root: Path) -> Optional[dict]:
    """Load config data from .budgetr/config.toml if it exists."""
    config_file = repo_root / ".budgetr" / "config.toml"

    if not config_file.exists():
        return None

    try:
        with open(config_file, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        # If config file is malformed, ignore it
        return None


def _get_repo_config_value(data: Optional[dict], keys: list[str]) -> Optional[object]:
    """Safely get a nested repo config value."""
    if not data:
        return None
    current: object = data
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return None
        current = current[key]
    return current


def _as_float(value: object, *, name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"Invalid config: {name} must be a number")
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValueError(f"Invalid config: {name} must be a number") from None


def _pick(env_name: str, repo_data: Optional[dict], keys: list[str], default: object) -> object:
    """Repo config wins over environment, environment over the default."""
    repo_value = _get_repo_config_value(repo_data, keys)
    if repo_value is not None:
        return repo_value
    env_value = os.environ.get(env_name)
    if env_value is not None and env_value.strip():
        return env_value
    return default


ProviderName = Literal["file", "google_drive", "supabase"]


class SyncConfig(BaseModel):
    """Auto-sync timing and provider selection."""

    provider: ProviderName = Field(default="file")
    debounce_ms: int = Field(default=1000)
    poll_interval_seconds: float = Field(default=30.0)
    remote_tolerance_seconds: float = Field(default=1.0)
    backup_file: Optional[Path] = Field(default=None, description="Backup path for the file provider")


class GoogleDriveConfig(BaseModel):
    """Google Drive provider settings."""

    credentials_path: Optional[Path] = Field(default=None)
    token_path: Optional[Path] = Field(default=None)
    backup_filename: str = Field(default="budgetr-backup.json")


class SupabaseConfig(BaseModel):
    """Supabase provider settings. The password only comes from the environment."""

    url: Optional[str] = Field(default=None)
    anon_key: Optional[str] = Field(default=None)
    email: Optional[str] = Field(default=None)


class BudgetrConfig(BaseModel):
    """Configuration for the Budgetr data directory and sync."""

    data_dir: Path = Field(
        default_factory=lambda: Path(os.environ.get("BUDGETR_HOME", "~/.budgetr")).expanduser()
    )
    sync: SyncConfig = Field(default_factory=SyncConfig)
    google: GoogleDriveConfig = Field(default_factory=GoogleDriveConfig)
    supabase: SupabaseConfig = Field(default_factory=SupabaseConfig)

    model_config = {"frozen": False}

    @classmethod
    def from_env(cls, cli_home: Optional[str] = None) -> "BudgetrConfig":
        """Load configuration with precedence CLI > .budgetr/config.toml > BUDGETR_* env > defaults.

        Args:
            cli_home: Data directory from the CLI --home option

        Raises:
            ValueError: If a numeric setting is not a number
        """
        repo_config = _load_repo_config_data(_find_repo_root(Path.cwd()))

        if cli_home:
            data_dir = Path(cli_home)
        else:
            data_dir = Path(str(_pick("BUDGETR_HOME", repo_config, ["data_dir"], "~/.budgetr")))
        data_dir = data_dir.expanduser()

        provider = str(_pick("BUDGETR_SYNC_PROVIDER", repo_config, ["sync", "provider"], "file"))
        backup_file = _pick("BUDGETR_BACKUP_FILE", repo_config, ["sync", "backup_file"], None)

        sync = SyncConfig(
            provider=provider,  # type: ignore[arg-type]
            debounce_ms=int(_as_float(
                _pick("BUDGETR_DEBOUNCE_MS", repo_config, ["sync", "debounce_ms"], 1000),
                name="sync.debounce_ms",
            )),
            poll_interval_seconds=_as_float(
                _pick("BUDGETR_POLL_INTERVAL_SECONDS", repo_config, ["sync", "poll_interval_seconds"], 30),
                name="sync.poll_interval_seconds",
            ),
            remote_tolerance_seconds=_as_float(
                _pick("BUDGETR_REMOTE_TOLERANCE_SECONDS", repo_config, ["sync", "remote_tolerance_seconds"], 1.0),
                name="sync.remote_tolerance_seconds",
            ),
            backup_file=Path(str(backup_file)).expanduser() if backup_file else None,
        )

        google_credentials = _pick("BUDGETR_GOOGLE_CREDENTIALS", repo_config, ["google", "credentials_path"], None)
        google_token = _pick("BUDGETR_GOOGLE_TOKEN", repo_config, ["google", "token_path"], None)
        google = GoogleDriveConfig(
            credentials_path=Path(str(google_credentials)).expanduser() if google_credentials else None,
            token_path=Path(str(google_token)).expanduser() if google_token else None,
            backup_filename=str(_pick(
                "BUDGETR_GOOGLE_BACKUP_FILENAME", repo_config, ["google", "backup_filename"], "budgetr-backup.json"
            )),
        )

        supabase = SupabaseConfig(
            url=_pick("BUDGETR_SUPABASE_URL", repo_config, ["supabase", "url"], None),  # type: ignore[arg-type]
            anon_key=_pick("BUDGETR_SUPABASE_ANON_KEY", repo_config, ["supabase", "anon_key"], None),  # type: ignore[arg-type]
            email=_pick("BUDGETR_SUPABASE_EMAIL", repo_config, ["supabase", "email"], None),  # type: ignore[arg-type]
        )

        return cls(data_dir=data_dir, sync=sync, google=google, supabase=supabase)
