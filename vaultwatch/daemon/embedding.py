"""
Embedding providers and the background embedding pipeline.

Producers call ``EmbeddingPipeline.enqueue`` and return immediately. A single
consumer task drains the queue in batches, calls the provider once per batch,
and writes each vector back with a compare-and-update conditioned on the
content hash the vector was computed from. A vector for text that has since
changed is therefore never attached.
"""

import asyncio
import inspect
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import httpx
import numpy as np
from loguru import logger

from .bus import EventBus, EMBEDDING_COMPLETED, EMBEDDING_FAILED, EMBEDDING_PROGRESS
from .config import EmbeddingConfig
from .errors import EmbeddingFailure, RetryPolicy
from .models import EmbeddingJob, EmbeddingProgress, EmbeddingStatus
from .store import RecordStore


class EmbeddingProvider(Protocol):
    """Anything with ``embed_batch(texts) -> vectors``; may be sync or async."""

    def embed_batch(self, texts: Sequence[str]) -> Any:
        ...


class OllamaEmbeddingProvider:
    """Embeddings from a local Ollama server via ``POST /api/embed``."""

    def __init__(self, model: str = "nomic-embed-text",
                 base_url: str = "http://localhost:11434",
                 timeout: float = 120.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.base_url}/api/embed",
                json={"model": self.model, "input": list(texts)},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise EmbeddingFailure(f"Ollama request failed: {e}") from e

        embeddings = response.json().get("embeddings", [])
        if len(embeddings) != len(texts):
            raise EmbeddingFailure(
                f"Ollama returned {len(embeddings)} embeddings for {len(texts)} texts"
            )
        return embeddings

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class SentenceTransformerProvider:
    """Local embeddings with sentence-transformers (optional ``local`` extra)."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        from sentence_transformers import SentenceTransformer

        self.model_name = model_name
        self.model = SentenceTransformer(model_name)
        self.embedding_dim = self.model.get_sentence_embedding_dimension()

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        vectors = await asyncio.to_thread(self.model.encode, list(texts))
        return [v.tolist() for v in vectors]


def create_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """Build the provider named in the embedding config."""
    if config.provider == "sentence-transformers":
        return SentenceTransformerProvider(config.model)
    return OllamaEmbeddingProvider(
        model=config.model,
        base_url=config.base_url,
        timeout=config.timeout_s,
    )


def chunk_text(text: str, chunk_chars: int = 512, overlap: int = 50) -> List[str]:
    """Split text into overlapping character windows."""
    if chunk_chars <= 0 or len(text) <= chunk_chars:
        return [text]
    step = max(chunk_chars - max(overlap, 0), 1)
    chunks = []
    for start in range(0, len(text), step):
        chunks.append(text[start:start + chunk_chars])
        if start + chunk_chars >= len(text):
            break
    return chunks


ProgressCallback = Callable[[EmbeddingProgress], Any]


class EmbeddingPipeline:
    """
    Batched, retrying embedding queue with a single consumer.

    Each job is attempted at most ``retry_policy.max_attempts`` times. The
    batch call counts as the first attempt for every job in it; after a
    batch failure the jobs are retried one by one, so a single bad input
    cannot sink its batch-mates.
    """

    # Compare-and-update retries when a concurrent scan bumps the revision
    CAS_RETRIES = 3

    def __init__(
        self,
        store: RecordStore,
        provider: EmbeddingProvider,
        bus: Optional[EventBus] = None,
        batch_size: int = 16,
        retry_policy: Optional[RetryPolicy] = None,
        chunk_chars: int = 512,
        chunk_overlap: int = 50,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.store = store
        self.provider = provider
        self.bus = bus
        self.batch_size = max(batch_size, 1)
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3)
        self.chunk_chars = chunk_chars
        self.chunk_overlap = chunk_overlap
        self.on_progress = on_progress

        self._queue: asyncio.Queue = asyncio.Queue()
        self._latest: Dict[str, EmbeddingJob] = {}
        self._task: Optional[asyncio.Task] = None
        self.running = False

        self.total = 0
        self.completed = 0
        self.failed = 0
        self.provider_calls = 0

    @classmethod
    def from_config(cls, store: RecordStore, provider: EmbeddingProvider,
                    config: EmbeddingConfig, bus: Optional[EventBus] = None,
                    on_progress: Optional[ProgressCallback] = None) -> "EmbeddingPipeline":
        return cls(
            store,
            provider,
            bus=bus,
            batch_size=config.batch_size,
            retry_policy=RetryPolicy(
                max_attempts=config.max_attempts,
                base_delay=config.retry_base_delay_s,
            ),
            chunk_chars=config.chunk_chars,
            chunk_overlap=config.chunk_overlap,
            on_progress=on_progress,
        )

    @property
    def pending(self) -> int:
        return self.total - self.completed

    @property
    def progress(self) -> EmbeddingProgress:
        return EmbeddingProgress(completed=self.completed, total=self.total, failed=self.failed)

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self._consume(), name="embedding-pipeline")
        logger.info(f"Embedding pipeline started (batch size {self.batch_size})")

    async def stop(self) -> None:
        """Stop the consumer; queued jobs are abandoned."""
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        closer = getattr(self.provider, "close", None)
        if closer is not None:
            result = closer()
            if inspect.isawaitable(result):
                await result
        logger.info("Embedding pipeline stopped")

    def enqueue(self, item_id: str, text: str, content_hash: str) -> EmbeddingJob:
        """Queue text for embedding; supersedes any earlier job for the item."""
        job = EmbeddingJob(item_id=item_id, text=text, content_hash=content_hash)
        self._latest[item_id] = job
        self.total += 1
        self._queue.put_nowait(job)
        return job

    async def wait_idle(self) -> None:
        """Wait until every queued job reached a terminal state."""
        await self._queue.join()

    join = wait_idle

    async def _consume(self) -> None:
        while self.running:
            job = await self._queue.get()
            batch = [job]
            while len(batch) < self.batch_size:
                try:
                    batch.append(self._queue.get_nowait())
                except asyncio.QueueEmpty:
                    break

            try:
                await self._process_batch(batch)
            except Exception as e:
                logger.exception(f"Embedding batch crashed: {e}")
            finally:
                for _ in batch:
                    self._queue.task_done()

    def _is_superseded(self, job: EmbeddingJob) -> bool:
        return self._latest.get(job.item_id) is not job

    async def _process_batch(self, batch: List[EmbeddingJob]) -> None:
        live = []
        for job in batch:
            if self._is_superseded(job):
                job.state = "superseded"
                await self._finish(job)
            else:
                live.append(job)
        if not live:
            return

        for job in live:
            job.state = "in_flight"
            job.attempts += 1

        try:
            vectors = await self._embed_texts([job.text for job in live])
        except Exception as e:
            logger.warning(f"Embedding batch of {len(live)} failed, retrying individually: {e}")
            for job in live:
                await self._retry_single(job, e)
            return

        for job, vector in zip(live, vectors):
            await self._complete(job, vector)

    async def _retry_single(self, job: EmbeddingJob, error: BaseException) -> None:
        last_error = error
        while self.retry_policy.should_retry(job.attempts):
            delay = self.retry_policy.calculate_delay(job.attempts)
            if delay > 0:
                await asyncio.sleep(delay)
            if self._is_superseded(job):
                job.state = "superseded"
                await self._finish(job)
                return
            job.attempts += 1
            try:
                vectors = await self._embed_texts([job.text])
            except Exception as e:
                logger.debug(f"Embedding attempt {job.attempts} for {job.item_id} failed: {e}")
                last_error = e
                continue
            await self._complete(job, vectors[0])
            return

        await self._fail(job, last_error)

    async def _embed_texts(self, texts: List[str]) -> List[List[float]]:
        """One provider call for all chunks of all texts, mean-pooled per text."""
        chunked = [chunk_text(t, self.chunk_chars, self.chunk_overlap) for t in texts]
        flat = [c for chunks in chunked for c in chunks]

        self.provider_calls += 1
        result = self.provider.embed_batch(flat)
        if inspect.isawaitable(result):
            result = await result

        vectors = list(result) if result is not None else []
        if len(vectors) != len(flat):
            raise EmbeddingFailure(f"Provider returned {len(vectors)} vectors for {len(flat)} inputs")

        pooled = []
        offset = 0
        for chunks in chunked:
            window = np.asarray(vectors[offset:offset + len(chunks)], dtype=np.float64)
            offset += len(chunks)
            if window.ndim != 2 or window.shape[1] == 0:
                raise EmbeddingFailure("Provider returned malformed vectors")
            pooled.append(window.mean(axis=0).tolist())
        return pooled

    async def _write_item(self, job: EmbeddingJob, changes: Dict[str, Any]) -> bool:
        """Write to the item only while it still holds the job's content."""
        for _ in range(self.CAS_RETRIES):
            current = await self.store.get(job.item_id)
            if current is None or current.get("is_deleted") or current.get("content_hash") != job.content_hash:
                return False
            revision = current.get("revision", 0)
            expected = {"content_hash": job.content_hash, "is_deleted": False, "revision": revision}
            update = dict(changes, revision=revision + 1, updated_at=datetime.utcnow().isoformat())
            if await self.store.compare_and_update(job.item_id, expected, update):
                return True
        return False

    async def _complete(self, job: EmbeddingJob, vector: List[float]) -> None:
        if self._is_superseded(job):
            job.state = "superseded"
            await self._finish(job)
            return

        written = await self._write_item(job, {
            "embedding_vector": vector,
            "embedding_status": EmbeddingStatus.READY.value,
            "embedding_error": None,
        })
        if written:
            job.state = "done"
            if self.bus:
                self.bus.publish(EMBEDDING_COMPLETED, source="embedding",
                                 item_id=job.item_id, content_hash=job.content_hash)
        else:
            job.state = "superseded"
            logger.debug(f"Discarding stale embedding for {job.item_id}")
        await self._finish(job)

    async def _fail(self, job: EmbeddingJob, error: BaseException) -> None:
        job.state = "failed"
        self.failed += 1
        logger.error(f"Embedding failed for {job.item_id} after {job.attempts} attempts: {error}")
        await self._write_item(job, {
            "embedding_status": EmbeddingStatus.FAILED.value,
            "embedding_error": str(error),
        })
        if self.bus:
            self.bus.publish(EMBEDDING_FAILED, source="embedding",
                             item_id=job.item_id, error=str(error), attempts=job.attempts)
        await self._finish(job)

    async def _finish(self, job: EmbeddingJob) -> None:
        self.completed += 1
        if self._latest.get(job.item_id) is job:
            del self._latest[job.item_id]

        progress = EmbeddingProgress(
            completed=self.completed,
            total=self.total,
            failed=self.failed,
            item_id=job.item_id,
            status=job.state,
        )
        if self.bus:
            self.bus.publish(EMBEDDING_PROGRESS, source="embedding", progress=progress)
        if self.on_progress is not None:
            try:
                result = self.on_progress(progress)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Embedding progress callback failed: {e}")
