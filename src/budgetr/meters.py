"""Sources for the initial meter registry."""

import logging
from pathlib import Path
from typing import Optional, Protocol

from .models.ledger import Meter

try:
    import tomllib  # Python 3.11+
except ImportError:
    import tomli as tomllib  # Python < 3.11

logger = logging.getLogger(__name__)

FACTOR_EPSILON = 0.001


def has_duplicate_factor(meters: list[Meter]) -> bool:
    """Check whether any two meters share a factor (within FACTOR_EPSILON)."""
    for i, meter in enumerate(meters):
        for other in meters[i + 1:]:
            if abs(meter.factor - other.factor) < FACTOR_EPSILON:
                return True
    return False


class MeterConfigurationSource(Protocol):
    """Supplies meters when the ledger has none persisted."""

    async def load_meters(self) -> list[Meter]: ...


class DefaultMeterConfiguration:
    """The built-in ``+1x`` / ``-1x`` pair."""

    async def load_meters(self) -> list[Meter]:
        return [
            Meter(name="+1x", factor=1.0, display_order=0),
            Meter(name="-1x", factor=-1.0, display_order=1),
        ]


class TomlMeterConfiguration:
    """Meters defined in a TOML file.

    Expected format::

        [[meters]]
        name = "Work"
        factor = 1.0

    Falls back to another source when the file is missing or invalid.
    """

    def __init__(self, path: Path, fallback: Optional[MeterConfigurationSource] = None):
        self.path = path
        self.fallback = fallback or DefaultMeterConfiguration()

    def _read(self) -> Optional[list[Meter]]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(f"Failed to read meter configuration {self.path}: {e}")
            return None

        entries = data.get("meters")
        if not isinstance(entries, list) or not entries:
            logger.warning(f"No [[meters]] entries in {self.path}")
            return None

        meters: list[Meter] = []
        for order, entry in enumerate(entries):
            if not isinstance(entry, dict):
                logger.warning(f"Ignoring malformed meter entry in {self.path}: {entry!r}")
                continue
            try:
                factor = float(entry["factor"])
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Ignoring meter without a numeric factor in {self.path}: {entry!r}")
                continue
            name = str(entry.get("name") or Meter.format_factor_name(factor)).strip()[:40]
            meters.append(Meter(name=name, factor=factor, display_order=order))

        if not meters:
            return None
        if has_duplicate_factor(meters):
            logger.warning(f"Duplicate meter factors in {self.path}, ignoring file")
            return None
        return meters

    async def load_meters(self) -> list[Meter]:
        meters = self._read()
        if meters is None:
            return await self.fallback.load_meters()
        return meters
