"""Persistent settings for `simulive watch` and `simulive serve`.

Each mode keeps its own JSON file under the config directory. Command line
flags override what is stored and are written back, so a flag given once
becomes the default for the next run.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from simulive.persistence import JsonFile

logger = logging.getLogger(__name__)

# Changes are written after this long without further changes
SAVE_DEBOUNCE_SECONDS = 60.0

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "simulive"


@dataclass
class BaseSettings:
    """Fields shared by every mode, plus loading and debounced saving."""

    log_level: str | None = None

    _file: JsonFile = field(
        default_factory=lambda: JsonFile(None, debounce_s=SAVE_DEBOUNCE_SECONDS),
        repr=False,
        compare=False,
    )

    def to_dict(self) -> dict[str, Any]:
        """Stored fields and their values."""
        return {f.name: getattr(self, f.name) for f in fields(self) if not f.name.startswith("_")}

    def update(self, **updates: Any) -> None:
        """Set fields; ``None`` leaves a field alone. Only real changes are saved.

        Raises:
            TypeError: For a name that is not a settings field.
        """
        known = self.to_dict()
        unknown = sorted(set(updates) - set(known))
        if unknown:
            raise TypeError(f"Unknown settings: {', '.join(unknown)}")
        changed = [
            name for name, value in updates.items() if value is not None and known[name] != value
        ]
        for name in changed:
            setattr(self, name, updates[name])
        if changed:
            logger.debug("Settings changed: %s", ", ".join(changed))
            self._file.schedule_save(self.to_dict)

    async def load(self) -> None:
        """Read stored values; unknown keys in the file are ignored."""
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, self._file.read)
        if not isinstance(data, dict):
            return
        for name in self.to_dict():
            if name in data:
                setattr(self, name, data[name])
        logger.info("Loaded settings from %s", self._file.path)

    async def flush(self) -> None:
        """Write pending changes now."""
        await self._file.flush()


@dataclass
class WatchSettings(BaseSettings):
    """Settings for watch mode."""

    last_server_url: str | None = None
    viewer_id: str | None = None
    hook_command: str | None = None


@dataclass
class ServeSettings(BaseSettings):
    """Settings for serve mode."""

    name: str | None = None
    listen_port: int | None = None
    catalog_path: str | None = None


def _settings_path(config_dir: str | None, filename: str) -> Path:
    return (Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR) / filename


async def get_watch_settings(config_dir: str | None = None) -> WatchSettings:
    """Create and load watch settings.

    Args:
        config_dir: Optional directory to store settings. Defaults to ~/.config/simulive.
    """
    path = _settings_path(config_dir, "settings-watch.json")
    settings = WatchSettings(_file=JsonFile(path, debounce_s=SAVE_DEBOUNCE_SECONDS))
    await settings.load()
    return settings


async def get_serve_settings(config_dir: str | None = None) -> ServeSettings:
    """Create and load serve settings.

    Args:
        config_dir: Optional directory to store settings. Defaults to ~/.config/simulive.
    """
    path = _settings_path(config_dir, "settings-serve.json")
    settings = ServeSettings(_file=JsonFile(path, debounce_s=SAVE_DEBOUNCE_SECONDS))
    await settings.load()
    return settings
