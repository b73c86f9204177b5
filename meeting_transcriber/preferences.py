"""Persisted engine preference."""

import json
import logging
from pathlib import Path

from meeting_transcriber._types import EngineKind

logger = logging.getLogger(__name__)


class EnginePreference:
    """Process-wide engine choice stored as a small JSON document.

    The router re-reads it at every ``start()``, so a change made from
    another process applies to the next session.
    """

    def __init__(self, path: Path | str | None = None, default: EngineKind = EngineKind.CONNECTED):
        self.path = Path(path).expanduser() if path is not None else None
        self.default = default
        self._value: EngineKind | None = None

    def get(self) -> EngineKind:
        """Return the persisted engine, falling back to the default."""
        if self.path is None or not self.path.exists():
            return self._value or self.default

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return EngineKind(data["engine"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable engine preference %s: %s", self.path, e)
            return self._value or self.default

    def set(self, kind: EngineKind) -> None:
        """Persist ``kind`` for subsequent sessions."""
        self._value = kind
        if self.path is None:
            return

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps({"engine": kind.value}, indent=2), encoding="utf-8")
            logger.debug("Engine preference saved to %s", self.path)
        except OSError as e:
            raise RuntimeError(f"Failed to save engine preference to {self.path}: {e}") from e
