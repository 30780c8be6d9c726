"""Storage for rendered turn sheet artifacts."""

from __future__ import annotations

from pathlib import Path

from ..config import settings
from ..logging import logger


def artifact_path(game_instance_id: int, turn_number: int, code: str) -> Path:
    return Path(settings.storage_config.artifact_dir) / str(game_instance_id) / str(turn_number) / f"{code}.pdf"


def write_artifact(game_instance_id: int, turn_number: int, code: str, artifact: bytes) -> str:
    """Write the artifact atomically; rewriting identical bytes is harmless."""
    path = artifact_path(game_instance_id, turn_number, code)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_bytes(artifact)
    tmp.replace(path)
    logger.debug("artifact_written", path=str(path), size=len(artifact))
    return str(path)


def read_artifact(path: str) -> bytes:
    return Path(path).read_bytes()
