"""File-backed artifact store.

Artifacts are files written under one directory and indexed by a
`manifest.json` beside them. Each artifact has an opaque id and a
human-readable name (its path relative to the artifact directory).
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from .events import EventBus, EventType, emit_to

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
MANIFEST_VERSION = "1.0"

# Extension appended to source code names without one, by metadata language
LANGUAGE_EXTENSIONS = {
    "rust": ".rs",
    "python": ".py",
    "javascript": ".js",
    "js": ".js",
    "typescript": ".ts",
    "ts": ".ts",
}


class ArtifactError(Exception):
    """Exception raised when an artifact cannot be stored or found."""

    pass


class ArtifactType(str, Enum):
    """Kinds of artifact."""

    SOURCE_CODE = "SourceCode"
    CONFIGURATION = "Configuration"
    DOCUMENTATION = "Documentation"
    TEST = "Test"
    BUILD = "Build"
    SCRIPT = "Script"
    DATA = "Data"
    OTHER = "Other"


# Extension appended to names without one, by artifact type
TYPE_EXTENSIONS = {
    ArtifactType.CONFIGURATION: ".toml",
    ArtifactType.DOCUMENTATION: ".md",
    ArtifactType.TEST: "_test.py",
    ArtifactType.SCRIPT: ".sh",
    ArtifactType.DATA: ".json",
}


@dataclass
class Artifact:
    """A named, typed, persisted unit of output."""

    id: str
    name: str
    artifact_type: ArtifactType
    path: Path
    content: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    updated_at: str = field(default_factory=lambda: datetime.now().isoformat())
    metadata: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to a manifest entry."""
        return {
            "id": self.id,
            "name": self.name,
            "artifact_type": self.artifact_type.value,
            "path": str(self.path),
            "content": self.content,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Artifact:
        """Create an Artifact from a manifest entry."""
        try:
            artifact_type = ArtifactType(data.get("artifact_type", "Other"))
        except ValueError:
            artifact_type = ArtifactType.OTHER
        return cls(
            id=data["id"],
            name=data["name"],
            artifact_type=artifact_type,
            path=Path(data["path"]),
            content=data.get("content"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
            metadata=data.get("metadata", {}) or {},
        )


def normalize_name(name: str) -> str:
    """Normalize an artifact name or diff path for comparison."""
    name = name.strip().replace("\\", "/")
    while name.startswith("./"):
        name = name[2:]
    return name


class ArtifactManager:
    """Manages creation, storage, and retrieval of artifacts."""

    def __init__(self, artifact_dir: Path, event_bus: Optional[EventBus] = None):
        """Initialize the manager, loading an existing manifest if present.

        Args:
            artifact_dir: Directory that receives artifact files.
            event_bus: Optional bus for artifact events.

        Raises:
            ArtifactError: If the directory cannot be created or the manifest
                cannot be parsed.
        """
        self.artifact_dir = Path(artifact_dir)
        self.event_bus = event_bus
        self._lock = threading.RLock()
        self._artifacts: list[Artifact] = []

        try:
            self.artifact_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArtifactError(f"Failed to create artifact directory {self.artifact_dir}: {e}") from e

        self._load_manifest()

    @property
    def manifest_path(self) -> Path:
        return self.artifact_dir / MANIFEST_NAME

    def _resolve_path(self, filename: str) -> Path:
        """Resolve a filename inside the artifact directory.

        Raises:
            ArtifactError: If the name escapes the artifact directory.
        """
        root = self.artifact_dir.resolve()
        path = (root / filename).resolve()
        if path != root and root not in path.parents:
            raise ArtifactError(f"Artifact path escapes artifact directory: {filename}")
        return path

    def create_artifact(
        self,
        name: str,
        artifact_type: ArtifactType,
        content: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> Artifact:
        """Create a new artifact and write it to disk.

        Names without an extension get one derived from the type (or, for
        source code, from the `language` metadata entry).

        Args:
            name: Artifact name, possibly with subdirectories.
            artifact_type: Kind of artifact.
            content: File content.
            metadata: Optional string metadata.

        Returns:
            The created Artifact.

        Raises:
            ArtifactError: If the file cannot be written.
        """
        metadata = dict(metadata or {})
        name = normalize_name(name)
        if not name:
            raise ArtifactError("Artifact name must not be empty")

        filename = name
        if "." not in Path(name).name:
            if artifact_type == ArtifactType.SOURCE_CODE:
                filename += LANGUAGE_EXTENSIONS.get(metadata.get("language", "").lower(), "")
            else:
                filename += TYPE_EXTENSIONS.get(artifact_type, "")

        path = self._resolve_path(filename)
        now = datetime.now().isoformat()
        artifact = Artifact(
            id=str(uuid.uuid4()),
            name=name,
            artifact_type=artifact_type,
            path=path,
            content=content,
            created_at=now,
            updated_at=now,
            metadata=metadata,
        )

        with self._lock:
            self._write_file(path, content)
            self._artifacts.append(artifact)
            self._save_manifest()

        logger.info(f"Created artifact {name} ({artifact_type.value}) at {path}")
        emit_to(self.event_bus, EventType.ARTIFACT_CREATED, {
            "id": artifact.id,
            "name": name,
            "artifact_type": artifact_type.value,
            "path": str(path),
        })
        return artifact

    def update_artifact(self, artifact_id: str, content: str) -> Artifact:
        """Replace the content of an existing artifact.

        Raises:
            ArtifactError: If the artifact does not exist or cannot be written.
        """
        with self._lock:
            artifact = self.get_artifact(artifact_id)
            if artifact is None:
                raise ArtifactError(f"Artifact not found: {artifact_id}")

            self._write_file(artifact.path, content)
            artifact.content = content
            artifact.updated_at = datetime.now().isoformat()
            self._save_manifest()

        logger.info(f"Updated artifact {artifact.name}")
        emit_to(self.event_bus, EventType.ARTIFACT_UPDATED, {
            "id": artifact.id,
            "name": artifact.name,
            "path": str(artifact.path),
        })
        return artifact

    def get_artifact(self, artifact_id: str) -> Optional[Artifact]:
        """Get an artifact by id."""
        with self._lock:
            for artifact in self._artifacts:
                if artifact.id == artifact_id:
                    return artifact
        return None

    def find_by_name(self, name: str) -> Optional[Artifact]:
        """Find the most recently created artifact with the given name."""
        wanted = normalize_name(name)
        with self._lock:
            for artifact in reversed(self._artifacts):
                if artifact.name == wanted:
                    return artifact
        return None

    def exists(self, name: str) -> bool:
        """Whether an artifact with the given name exists."""
        return self.find_by_name(name) is not None

    def list_artifacts(self) -> list[Artifact]:
        """List all artifacts in creation order."""
        with self._lock:
            return list(self._artifacts)

    def list_by_type(self, artifact_type: ArtifactType) -> list[Artifact]:
        """List artifacts of one type."""
        return [a for a in self.list_artifacts() if a.artifact_type == artifact_type]

    def cleanup(self) -> int:
        """Remove files in the artifact directory that no artifact owns.

        Returns:
            Number of files removed.
        """
        with self._lock:
            owned = {a.path.resolve() for a in self._artifacts}

        removed = 0
        for path in self.artifact_dir.rglob("*"):
            if not path.is_file() or path.name == MANIFEST_NAME:
                continue
            if path.resolve() not in owned:
                path.unlink()
                removed += 1
                logger.debug(f"Removed orphaned file {path}")
        return removed

    def _write_file(self, path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise ArtifactError(f"Failed to write artifact file {path}: {e}") from e

    def _save_manifest(self) -> None:
        manifest = {
            "version": MANIFEST_VERSION,
            "artifacts": [a.to_dict() for a in self._artifacts],
            "metadata": {},
        }
        try:
            with open(self.manifest_path, "w", encoding="utf-8") as f:
                json.dump(manifest, f, indent=2)
        except OSError as e:
            raise ArtifactError(f"Failed to write manifest: {e}") from e

    def _load_manifest(self) -> None:
        if not self.manifest_path.exists():
            return
        try:
            with open(self.manifest_path, encoding="utf-8") as f:
                manifest = json.load(f)
            self._artifacts = [Artifact.from_dict(a) for a in manifest.get("artifacts", [])]
        except (OSError, json.JSONDecodeError, KeyError) as e:
            raise ArtifactError(f"Failed to load manifest {self.manifest_path}: {e}") from e
        logger.debug(f"Loaded {len(self._artifacts)} artifacts from manifest")
