from __future__ import annotations

import logging
import threading
from typing import Any

from sequencer.errors import ArtifactNotFound, DuplicateArtifact
from sequencer.models import Artifact, ArtifactKind

logger = logging.getLogger(__name__)


def infer_kind(value: Any) -> ArtifactKind:
    if isinstance(value, bool):
        return ArtifactKind.JSON
    if isinstance(value, int):
        return ArtifactKind.EXIT_CODE
    if isinstance(value, str):
        return ArtifactKind.STRING
    return ArtifactKind.JSON


class ArtifactStore:
    """Write-once artifact store, partitioned by run.

    Concurrent stages of one run share the store. Each key is written at
    most once per run, so the write-once check is the only locking needed.
    """

    def __init__(self) -> None:
        self._runs: dict[str, dict[str, Artifact]] = {}
        self._lock = threading.Lock()

    def put(
        self,
        run_id: str,
        key: str,
        value: Any,
        kind: ArtifactKind | None = None,
        producer: str | None = None,
    ) -> Artifact:
        """Write *key* for *run_id*. Raises DuplicateArtifact if already set."""
        artifact = Artifact(
            key=key,
            kind=kind or infer_kind(value),
            value=value,
            producer=producer,
        )
        with self._lock:
            run = self._runs.setdefault(run_id, {})
            if key in run:
                raise DuplicateArtifact(run_id, key)
            run[key] = artifact
        logger.debug("Run %s: stored artifact %s from %s", run_id, key, producer)
        return artifact

    def put_many(
        self, run_id: str, artifacts: dict[str, Artifact], producer: str
    ) -> list[str]:
        """Commit a stage's artifacts all at once, or none of them."""
        committed = {
            key: Artifact(key=key, kind=a.kind, value=a.value, producer=producer)
            for key, a in artifacts.items()
        }
        with self._lock:
            run = self._runs.setdefault(run_id, {})
            for key in committed:
                if key in run:
                    raise DuplicateArtifact(run_id, key)
            run.update(committed)
        logger.debug("Run %s: committed %d artifacts from %s", run_id, len(committed), producer)
        return list(committed)

    def get(self, run_id: str, key: str) -> Artifact:
        with self._lock:
            artifact = self._runs.get(run_id, {}).get(key)
        if artifact is None:
            raise ArtifactNotFound(run_id, key)
        return artifact

    def value(self, run_id: str, key: str) -> Any:
        return self.get(run_id, key).value

    def has(self, run_id: str, key: str) -> bool:
        with self._lock:
            return key in self._runs.get(run_id, {})

    def snapshot(self, run_id: str) -> dict[str, Artifact]:
        """Copy of every artifact written so far in *run_id*."""
        with self._lock:
            return dict(self._runs.get(run_id, {}))

    def teardown(self, run_id: str) -> None:
        with self._lock:
            self._runs.pop(run_id, None)
