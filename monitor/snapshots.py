"""
Persisted baselines for change detection.

One file per (kind, language). Switching the portal language therefore
starts a separate baseline instead of reporting every translated field.
"""

from pathlib import Path
from typing import Optional, Union

import structlog
from pydantic import ValidationError

from portal.errors import CacheCorrupt
from portal.models import EntityKind, Language
from storage.files import atomic_write_json, read_json
from .models import SNAPSHOT_SCHEMA_VERSION, Snapshot

logger = structlog.get_logger(__name__)


class SnapshotStore:
    """Reads and writes Snapshot files below `directory`."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.logger = logger.bind(component="snapshot_store")

    def path_for(self, kind: EntityKind, language: Language) -> Path:
        return self.directory / f"{kind.value}.{language.value}.json"

    def load(self, kind: EntityKind, language: Language) -> Optional[Snapshot]:
        """
        Return the baseline for (kind, language).

        A missing, unreadable or foreign-schema file yields None so that the
        next detection run starts a fresh baseline.
        """
        path = self.path_for(kind, language)
        try:
            data = read_json(path)
            version = data.get("schema_version") if isinstance(data, dict) else None
            if version != SNAPSHOT_SCHEMA_VERSION:
                raise CacheCorrupt(path, f"schema version {version!r}, expected {SNAPSHOT_SCHEMA_VERSION}")
            snapshot = Snapshot.model_validate(data)
        except FileNotFoundError:
            return None
        except CacheCorrupt as e:
            self.logger.warning("Discarding unusable baseline", path=e.path, reason=e.reason)
            return None
        except ValidationError as e:
            self.logger.warning("Discarding invalid baseline", path=str(path), errors=e.error_count())
            return None

        if snapshot.kind != kind or snapshot.language != language:
            self.logger.warning(
                "Discarding baseline for another collection",
                path=str(path),
                kind=snapshot.kind.value,
                language=snapshot.language.value
            )
            return None

        return snapshot

    def save(self, snapshot: Snapshot) -> None:
        atomic_write_json(self.path_for(snapshot.kind, snapshot.language), snapshot.model_dump(mode="json"))
        self.logger.debug(
            "Saved baseline",
            kind=snapshot.kind.value,
            language=snapshot.language.value,
            entities=len(snapshot.entities)
        )

    def delete(self, kind: EntityKind, language: Language) -> None:
        self.path_for(kind, language).unlink(missing_ok=True)
