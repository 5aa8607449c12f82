"""
Artifact store with one-time download.

Payload bytes live on the filesystem under ``artifact_dir``; metadata and
the download state live in SQLite next to the ledger so both can be
committed together.

Retrieval policy: the artifact is marked consumed *before* the first byte
is streamed. A client that disconnects mid-download does not get a second
chance; each paid unit is served at most once.

Access control is possession of the artifact id. No authentication is
performed at the retrieval boundary.
"""

import logging
import os
import sqlite3
import tempfile
from pathlib import Path
from typing import Iterator, Optional

from coin_gate.storage.db import DEFAULT_DB_PATH, get_connection, transaction
from coin_gate.storage.models import ArtifactMetadata, ArtifactPage, DownloadState
from coin_gate.storage import repository

from .errors import Gone, NotFound, StorageFailure

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
PAYLOAD_SUFFIX = ".png"


class OneTimeStream:
    """Lazy single-pass reader over a consumed artifact's payload.

    The payload file is deleted when iteration finishes, fails, or the
    stream is closed, whichever happens first.
    """

    def __init__(self, store: "ArtifactStore", metadata: ArtifactMetadata, chunk_size: int = CHUNK_SIZE):
        self.metadata = metadata
        self._store = store
        self._chunk_size = chunk_size
        self._closed = False
        self._started = False

    @property
    def artifact_id(self) -> str:
        return self.metadata.artifact_id

    def __iter__(self) -> Iterator[bytes]:
        if self._closed:
            raise Gone(f"Artifact {self.artifact_id} stream already closed")
        if self._started:
            raise Gone(f"Artifact {self.artifact_id} stream is already being read")
        self._started = True
        return self._chunks()

    def _chunks(self) -> Iterator[bytes]:
        try:
            with open(self._store.path_for(self.metadata.storage_ref), "rb") as f:
                while True:
                    chunk = f.read(self._chunk_size)
                    if not chunk:
                        break
                    yield chunk
        except OSError as e:
            raise StorageFailure(f"Failed to read artifact {self.artifact_id}: {e}")
        finally:
            self.close()

    def read(self) -> bytes:
        """Read the whole payload."""
        return b"".join(self)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store.delete(self.metadata.storage_ref)
        logger.info(f"Artifact {self.artifact_id} payload released")

    def __enter__(self) -> "OneTimeStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ArtifactStore:
    """Persists generated payloads and serves each one exactly once."""

    def __init__(self, artifact_dir: str = "artifacts", db_path: str = DEFAULT_DB_PATH):
        self.root = Path(artifact_dir)
        self.db_path = db_path

    def path_for(self, storage_ref: str) -> Path:
        path = (self.root / storage_ref).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"storage_ref escapes the artifact directory: {storage_ref}")
        return path

    def put(self, account_scoped_id: str, payload: bytes) -> str:
        """Durably write a payload.

        The file is written under a temporary name, fsynced, then renamed,
        so it is only visible once this call returns.

        Args:
            account_scoped_id: ``<account_id>/<artifact_id>``
            payload: Artifact bytes

        Returns:
            Storage reference relative to the artifact directory

        Raises:
            StorageFailure: If the write fails
        """
        storage_ref = f"{account_scoped_id}{PAYLOAD_SUFFIX}"
        path = self.path_for(storage_ref)
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageFailure(f"Failed to store artifact {account_scoped_id}: {e}")
        logger.debug(f"Stored {len(payload)} bytes at {storage_ref}")
        return storage_ref

    def delete(self, storage_ref: str) -> None:
        """Remove a payload; no-op if it is already gone."""
        try:
            self.path_for(storage_ref).unlink()
        except FileNotFoundError:
            pass

    def exists(self, storage_ref: str) -> bool:
        return self.path_for(storage_ref).exists()

    def record(self, conn: sqlite3.Connection, metadata: ArtifactMetadata) -> None:
        """Write artifact metadata inside the caller's transaction."""
        if metadata.download_state != DownloadState.AVAILABLE:
            raise ValueError("only available artifacts can be recorded")
        repository.insert_artifact(conn, metadata)

    def get_metadata(self, artifact_id: str) -> ArtifactMetadata:
        conn = get_connection(self.db_path)
        try:
            metadata = repository.fetch_artifact(conn, artifact_id)
        finally:
            conn.close()
        if metadata is None:
            raise NotFound(f"Unknown artifact: {artifact_id}")
        return metadata

    def get_once(self, artifact_id: str) -> OneTimeStream:
        """Claim an artifact for its single download.

        The consumed transition is committed before the stream is
        returned, so concurrent and repeated calls fail with Gone even if
        the first reader never finishes.

        Raises:
            NotFound: If the artifact id is unknown
            Gone: If the artifact was already claimed
            StorageFailure: If the payload is missing
        """
        with transaction(self.db_path) as conn:
            claimed = repository.mark_artifact_consumed(conn, artifact_id)
            metadata = repository.fetch_artifact(conn, artifact_id)
        if metadata is None:
            raise NotFound(f"Unknown artifact: {artifact_id}")
        if not claimed:
            raise Gone(f"Artifact {artifact_id} was already downloaded")

        if not self.exists(metadata.storage_ref):
            raise StorageFailure(f"Payload for artifact {artifact_id} is missing")
        logger.info(f"Artifact {artifact_id} consumed")
        return OneTimeStream(self, metadata)

    def list_for_account(self, account_id: str, page: int = 1, limit: int = 10) -> ArtifactPage:
        """One page of an account's artifacts, newest first."""
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be >= 1")
        conn = get_connection(self.db_path)
        try:
            artifacts = repository.fetch_artifacts_for_account(
                conn, account_id, limit=limit, offset=(page - 1) * limit
            )
            total = repository.count_artifacts(conn, account_id)
        finally:
            conn.close()
        return ArtifactPage(artifacts=artifacts, total=total, page=page, limit=limit)

    def discard(self, account_id: str, artifact_id: str) -> None:
        """Delete an owned artifact's metadata and payload.

        Raises:
            NotFound: If the account owns no such artifact
        """
        with transaction(self.db_path) as conn:
            metadata = repository.fetch_artifact(conn, artifact_id)
            if metadata is None or not repository.delete_artifact_row(conn, account_id, artifact_id):
                raise NotFound(f"Artifact not found: {artifact_id}")
        self.delete(metadata.storage_ref)
        logger.info(f"Artifact {artifact_id} discarded by {account_id}")
