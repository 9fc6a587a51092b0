"""File layout of the Budgetr data directory."""

from pathlib import Path

from .config import BudgetrConfig


class DataPaths:
    """Manages paths within the Budgetr data directory."""

    def __init__(self, data_dir: Path):
        """Initialize paths from the data directory.

        Args:
            data_dir: Root directory holding local state
        """
        self.root = data_dir

        self.state_file = data_dir / "state.json"
        self.meters_file = data_dir / "meters.toml"
        self.exports = data_dir / "exports"

        # Provider files
        self.backup_file = data_dir / "backup" / "budgetr-backup.json"
        self.google_credentials = data_dir / "google_credentials.json"
        self.google_token = data_dir / "google_token.json"
        self.supabase_session = data_dir / "supabase_session.json"

    @classmethod
    def from_config(cls, config: BudgetrConfig) -> "DataPaths":
        """Create DataPaths from a BudgetrConfig."""
        return cls(config.data_dir)

    def get_all_directories(self) -> list[Path]:
        """Get list of all directories that should exist in the data dir."""
        return [self.root, self.exports, self.backup_file.parent]
