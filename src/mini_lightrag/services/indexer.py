import asyncio
import os
import time
from collections.abc import Sequence
from datetime import datetime, timedelta
from fnmatch import fnmatch
from pathlib import Path

import numpy as np
from loguru import logger
from numpy.typing import NDArray
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mini_lightrag.config import IndexingConfig
from mini_lightrag.core.errors import BackendUnavailable, InputError, StoreError
from mini_lightrag.core.models import (
    Chunk,
    FileError,
    IndexingStats,
    IndexingStatus,
    utcnow,
)
from mini_lightrag.core.ports import IEmbedder, IVectorStore
from mini_lightrag.core.text import normalize_content, sha256_hex
from mini_lightrag.services.chunking import ChunkingService
from mini_lightrag.services.graph import GraphBuilder


class FileOutcome(BaseModel):
    """What happened to one file during a run."""

    path: str
    status: str  # added | modified | unchanged | skipped
    chunks_added: int = 0
    chunks_retired: int = 0


def matches_any(path: str, patterns: Sequence[str]) -> bool:
    """Glob match where a leading ``**/`` may also match zero directories."""
    for pattern in patterns:
        if fnmatch(path, pattern):
            return True
        if pattern.startswith("**/") and fnmatch(path, pattern[3:]):
            return True
    return False


def assign_versions(
    chunks: Sequence[Chunk], previous: Sequence[Chunk], now: datetime
) -> list[Chunk]:
    """
    Carries versions over from the file's previous chunk set.
    An unchanged id keeps its version and timestamp; otherwise the chunk in the same ordinal
    slot is taken as its predecessor and the version is bumped; new slots start at 1.
    """
    previous_by_id = {c.id: c for c in previous}
    versioned: list[Chunk] = []
    for slot, chunk in enumerate(chunks):
        same = previous_by_id.get(chunk.id)
        if same is not None:
            update = {"version": same.version, "updated_at": same.updated_at}
        elif slot < len(previous):
            update = {"version": previous[slot].version + 1, "updated_at": now}
        else:
            update = {"version": 1, "updated_at": now}
        versioned.append(chunk.model_copy(update=update))
    return versioned


class IncrementalIndexer:
    """
    Walks a workspace and keeps the store in sync with it.
    Unchanged files are skipped by content hash; changed files are re-chunked, re-embedded and
    replaced atomically; vanished files are tombstoned and purged after the retention window.
    """

    def __init__(
        self,
        store: IVectorStore,
        chunking: ChunkingService,
        embedding: IEmbedder,
        graph: GraphBuilder,
        config: IndexingConfig,
    ) -> None:
        self.store = store
        self.chunking = chunking
        self.embedding = embedding
        self.graph = graph
        self.config = config
        self.status = IndexingStatus()
        self._cancel_requested = False

    def cancel(self) -> None:
        """Requests a stop. Files already in flight finish; no new file is started."""
        if self.status.is_indexing:
            logger.info("Cancellation requested")
        self._cancel_requested = True

    # ---- discovery ----------------------------------------------------------

    def discover_files(self, root: Path) -> list[str]:
        """Workspace-relative POSIX paths of candidate files. Skip patterns win over includes."""
        if not root.is_dir():
            raise InputError(f"Workspace root '{root}' is not a directory")

        found: list[str] = []
        for dirpath, dirnames, filenames in os.walk(root):
            rel_dir = Path(dirpath).relative_to(root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir
            # Prune skipped directories in place so os.walk never descends into them
            dirnames[:] = sorted(
                d
                for d in dirnames
                if not matches_any(f"{rel_dir}/{d}/" if rel_dir else f"{d}/", self.config.skip_patterns)
            )
            for name in filenames:
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if matches_any(rel, self.config.skip_patterns):
                    continue
                if matches_any(rel, self.config.include_patterns):
                    found.append(rel)
        return sorted(found)

    # ---- runs -----------------------------------------------------------------

    async def force_reindex(self, root: str | Path) -> IndexingStats:
        """Clears the store and indexes every file, bypassing change detection."""
        return await self.index_workspace(root, force=True)

    async def index_workspace(self, root: str | Path, force: bool = False) -> IndexingStats:
        root_path = Path(root).resolve()
        started = time.perf_counter()
        stats = IndexingStats()
        self._cancel_requested = False
        self.status = IndexingStatus(is_indexing=True, started_at=utcnow())

        try:
            await asyncio.to_thread(self.store.initialize)
            if force:
                logger.info("Force reindex: clearing the store")
                await asyncio.to_thread(self.store.clear)

            files = await asyncio.to_thread(self.discover_files, root_path)
            known = {} if force else await asyncio.to_thread(self.store.get_file_hashes)
            stats.files_scanned = len(files)
            self.status.total_files = len(files)
            logger.info("Indexing {}: {} candidate files", root_path, len(files))

            changed = await self._retire_missing(sorted(set(known) - set(files)), stats)

            semaphore = asyncio.Semaphore(self.config.max_concurrency)
            batch_size = max(1, self.config.batch_size)
            batches_since_rebuild = 0
            changed_since_rebuild = changed

            for offset in range(0, len(files), batch_size):
                batch = files[offset : offset + batch_size]
                results = await asyncio.gather(
                    *(
                        self._process_file(root_path, rel, known.get(rel), semaphore)
                        for rel in batch
                    ),
                    return_exceptions=True,
                )
                batch_changed = self._collect(batch, results, stats)
                changed = changed or batch_changed
                changed_since_rebuild = changed_since_rebuild or batch_changed
                batches_since_rebuild += 1

                if self._cancel_requested:
                    stats.cancelled = True
                    logger.warning("Indexing cancelled after {} files", self.status.processed_files)
                    break

                if (
                    changed_since_rebuild
                    and self.config.graph_rebuild_every_batches > 0
                    and batches_since_rebuild >= self.config.graph_rebuild_every_batches
                    and offset + batch_size < len(files)
                ):
                    await asyncio.to_thread(self.graph.rebuild)
                    batches_since_rebuild = 0
                    changed_since_rebuild = False

            if changed:
                await asyncio.to_thread(self.graph.rebuild)
                await asyncio.to_thread(self.store.create_indices)
                await asyncio.to_thread(self.store.compact)

            counts = await asyncio.to_thread(self.store.counts)
            stats.nodes = counts.nodes
            stats.edges = counts.edges
        finally:
            stats.duration_ms = (time.perf_counter() - started) * 1000
            self.status.is_indexing = False
            self.status.current_file = None
            self.status.errors = list(stats.errors)

        logger.info(
            "Indexing complete in {:.0f}ms: {} added, {} modified, {} unchanged, {} removed, {} errors",
            stats.duration_ms,
            stats.files_added,
            stats.files_modified,
            stats.files_unchanged,
            stats.files_removed,
            len(stats.errors),
        )
        return stats

    async def purge_tombstones(self, now: datetime | None = None) -> int:
        """Physically deletes chunks tombstoned more than ``retention_days`` ago."""
        reference = now or utcnow()
        cutoff = reference - timedelta(days=self.config.retention_days)
        return await asyncio.to_thread(self.store.purge_tombstones, cutoff)

    # ---- internals --------------------------------------------------------------

    async def _retire_missing(self, paths: list[str], stats: IndexingStats) -> bool:
        """Tombstones (or deletes) the chunks of files that disappeared since the last run."""
        if not paths:
            return False
        stats.files_removed = len(paths)
        if self.config.enable_tombstones:
            count = await asyncio.to_thread(self.store.tombstone_paths, paths, utcnow())
            stats.chunks_tombstoned += count
        else:
            for path in paths:
                old = await asyncio.to_thread(self.store.get_chunks_by_path, path)
                await asyncio.to_thread(self.store.delete_chunks, [c.id for c in old])
                stats.chunks_removed += len(old)
        logger.info("Retired {} removed files", len(paths))
        return True

    def _collect(
        self, batch: list[str], results: list[FileOutcome | BaseException], stats: IndexingStats
    ) -> bool:
        """Folds one batch into ``stats``. StoreError aborts the run; other errors are per file."""
        changed = False
        fatal: BaseException | None = None
        for rel, result in zip(batch, results, strict=True):
            if isinstance(result, StoreError):
                fatal = fatal or result
                stats.errors.append(FileError(path=rel, message=str(result)))
                continue
            if isinstance(result, Exception):
                logger.warning("Failed to index {}: {}", rel, result)
                stats.errors.append(FileError(path=rel, message=f"{type(result).__name__}: {result}"))
                continue
            if isinstance(result, BaseException):
                raise result

            if result.status == "skipped":
                continue
            self.status.processed_files += 1
            if result.status == "unchanged":
                stats.files_unchanged += 1
                continue

            changed = True
            if result.status == "added":
                stats.files_added += 1
            else:
                stats.files_modified += 1
            stats.chunks_added += result.chunks_added
            if self.config.enable_tombstones:
                stats.chunks_tombstoned += result.chunks_retired
            else:
                stats.chunks_removed += result.chunks_retired

        if self.status.total_files:
            self.status.progress = 100.0 * self.status.processed_files / self.status.total_files
        self.status.errors = list(stats.errors)
        if fatal is not None:
            raise fatal
        return changed

    async def _process_file(
        self,
        root: Path,
        rel: str,
        known_hash: str | None,
        semaphore: asyncio.Semaphore,
    ) -> FileOutcome:
        async with semaphore:
            if self._cancel_requested:
                return FileOutcome(path=rel, status="skipped")
            self.status.current_file = rel

            raw = await asyncio.to_thread((root / rel).read_text, encoding="utf-8")
            content = normalize_content(raw)
            file_hash = sha256_hex(content, 64)
            if known_hash == file_hash:
                return FileOutcome(path=rel, status="unchanged")

            chunks = await asyncio.to_thread(self.chunking.chunk_file, rel, content, file_hash)
            if not chunks and known_hash is None:
                # Hashes live on chunk rows, so a chunkless file has nothing stored to compare
                return FileOutcome(path=rel, status="unchanged")
            if chunks:
                vectors = await self._embed([c.text for c in chunks])
                chunks = [
                    c.model_copy(update={"vector": v.tolist()})
                    for c, v in zip(chunks, vectors, strict=True)
                ]

            previous: list[Chunk] = []
            if known_hash is not None:
                previous = await asyncio.to_thread(self.store.get_chunks_by_path, rel)

            now = utcnow()
            chunks = assign_versions(chunks, previous, now)
            new_ids = {c.id for c in chunks}
            previous_ids = {c.id for c in previous}
            stale = [c.id for c in previous if c.id not in new_ids]

            await asyncio.to_thread(
                self.store.replace_file_chunks,
                chunks,
                stale,
                self.config.enable_tombstones,
                now,
            )
            logger.debug("Indexed {}: {} chunks, {} retired", rel, len(chunks), len(stale))
            return FileOutcome(
                path=rel,
                status="modified" if known_hash is not None else "added",
                chunks_added=len(new_ids - previous_ids),
                chunks_retired=len(stale),
            )

    async def _embed(self, texts: list[str]) -> NDArray[np.float32]:
        """Embeds with a timeout per attempt and exponential backoff on BackendUnavailable."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(BackendUnavailable),
            stop=stop_after_attempt(max(1, self.config.embed_retry_attempts)),
            wait=wait_exponential(multiplier=0.5, max=self.config.embed_retry_max_wait),
            before_sleep=lambda retry_state: logger.warning(
                "Embedding attempt {} failed, retrying: {}",
                retry_state.attempt_number,
                retry_state.outcome.exception() if retry_state.outcome else None,
            ),
            reraise=True,
        )
        vectors: NDArray[np.float32] = np.empty((0, self.embedding.dimension), dtype=np.float32)
        async for attempt in retrying:
            with attempt:
                vectors = await asyncio.wait_for(
                    asyncio.to_thread(self.embedding.embed_batch, texts),
                    timeout=self.config.embed_timeout_seconds,
                )
        return vectors
