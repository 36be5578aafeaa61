"""Tests for the embedding pipeline and providers."""

import asyncio

import httpx
import pytest

from vaultwatch.daemon.bus import EventBus, Event
from vaultwatch.daemon.embedding import (
    EmbeddingPipeline,
    OllamaEmbeddingProvider,
    chunk_text,
)
from vaultwatch.daemon.errors import EmbeddingFailure, RetryPolicy
from vaultwatch.daemon.models import content_hash_for
from vaultwatch.daemon.store import InMemoryRecordStore
from vaultwatch.tests.fakes import FakeProvider


async def add_item(store, item_id, text):
    await store.add({
        "id": item_id,
        "text_content": text,
        "content_hash": content_hash_for(text),
        "embedding_vector": None,
        "embedding_status": "pending",
        "is_deleted": False,
        "revision": 1,
    })


def make_pipeline(store, provider, **kwargs):
    kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, base_delay=0))
    return EmbeddingPipeline(store, provider, **kwargs)


class TestChunking:

    def test_short_text_single_chunk(self):
        assert chunk_text("short", 512, 50) == ["short"]

    def test_overlapping_windows(self):
        text = "".join(chr(ord("a") + i % 26) for i in range(1000))
        chunks = chunk_text(text, 512, 50)

        assert [len(c) for c in chunks] == [512, 512, 76]
        assert chunks[0][-50:] == chunks[1][:50]
        assert chunks[-1] == text[-76:]


class TestEmbeddingPipeline:

    @pytest.mark.asyncio
    async def test_embeds_and_writes_vectors(self):
        store = InMemoryRecordStore()
        provider = FakeProvider()
        await add_item(store, "1", "apple")
        await add_item(store, "2", "banana")

        pipeline = make_pipeline(store, provider)
        await pipeline.start()
        pipeline.enqueue("1", "apple", content_hash_for("apple"))
        pipeline.enqueue("2", "banana", content_hash_for("banana"))
        await pipeline.wait_idle()
        await pipeline.stop()

        record = await store.get("1")
        assert record["embedding_vector"] == FakeProvider.vector_for("apple")
        assert record["embedding_status"] == "ready"
        assert record["revision"] == 2
        assert (await store.get("2"))["embedding_status"] == "ready"

    @pytest.mark.asyncio
    async def test_jobs_are_batched(self):
        store = InMemoryRecordStore()
        provider = FakeProvider()
        texts = [f"text {i}" for i in range(5)]
        for i, text in enumerate(texts):
            await add_item(store, str(i), text)

        pipeline = make_pipeline(store, provider, batch_size=16)
        for i, text in enumerate(texts):
            pipeline.enqueue(str(i), text, content_hash_for(text))
        await pipeline.start()
        await pipeline.wait_idle()
        await pipeline.stop()

        assert provider.calls == [texts]

    @pytest.mark.asyncio
    async def test_one_bad_job_does_not_sink_the_batch(self):
        """X always fails; Y and Z share its batch and still succeed."""
        store = InMemoryRecordStore()
        provider = FakeProvider(fail_on=["X"])
        bus = EventBus()
        await bus.start()
        failed_events = []
        completed_events = []

        async def on_failed(event: Event):
            failed_events.append(event)

        async def on_completed(event: Event):
            completed_events.append(event)

        bus.subscribe("embedding.failed", on_failed)
        bus.subscribe("embedding.completed", on_completed)

        progress = []
        pipeline = make_pipeline(store, provider, bus=bus, on_progress=progress.append)
        for item_id in ("X", "Y", "Z"):
            await add_item(store, item_id, item_id)
            pipeline.enqueue(item_id, item_id, content_hash_for(item_id))

        await pipeline.start()
        await pipeline.wait_idle()
        await pipeline.stop()
        await bus.drain()

        assert provider.calls_with("X") == 3
        assert (await store.get("X"))["embedding_status"] == "failed"
        assert (await store.get("X"))["embedding_error"]
        assert (await store.get("X"))["embedding_vector"] is None
        assert (await store.get("Y"))["embedding_status"] == "ready"
        assert (await store.get("Z"))["embedding_status"] == "ready"

        assert [e.data["item_id"] for e in failed_events] == ["X"]
        assert sorted(e.data["item_id"] for e in completed_events) == ["Y", "Z"]

        completed = [p.completed for p in progress]
        assert completed == sorted(completed)
        assert progress[-1].completed == progress[-1].total == 3
        assert progress[-1].failed == 1

        await bus.stop()

    @pytest.mark.asyncio
    async def test_queue_continues_after_failure(self):
        store = InMemoryRecordStore()
        provider = FakeProvider(fail_on=["bad"])
        await add_item(store, "1", "bad")
        await add_item(store, "2", "good")

        pipeline = make_pipeline(store, provider, batch_size=1)
        await pipeline.start()
        pipeline.enqueue("1", "bad", content_hash_for("bad"))
        await pipeline.wait_idle()
        pipeline.enqueue("2", "good", content_hash_for("good"))
        await pipeline.wait_idle()
        await pipeline.stop()

        assert (await store.get("1"))["embedding_status"] == "failed"
        assert (await store.get("2"))["embedding_status"] == "ready"
        assert pipeline.failed == 1
        assert pipeline.pending == 0

    @pytest.mark.asyncio
    async def test_stale_result_is_discarded(self):
        """Text replaced while the provider runs: the old vector is never attached."""
        store = InMemoryRecordStore()
        await add_item(store, "1", "old text")

        class EditingProvider(FakeProvider):
            async def embed_batch(self, texts):
                vectors = await super().embed_batch(texts)
                await store.update("1", {
                    "text_content": "new text",
                    "content_hash": content_hash_for("new text"),
                    "revision": 2,
                })
                return vectors

        pipeline = make_pipeline(store, EditingProvider())
        await pipeline.start()
        pipeline.enqueue("1", "old text", content_hash_for("old text"))
        await pipeline.wait_idle()
        await pipeline.stop()

        record = await store.get("1")
        assert record["embedding_vector"] is None
        assert record["embedding_status"] == "pending"
        assert record["text_content"] == "new text"

    @pytest.mark.asyncio
    async def test_superseded_job_skipped(self):
        store = InMemoryRecordStore()
        provider = FakeProvider()
        await add_item(store, "1", "second")

        pipeline = make_pipeline(store, provider)
        pipeline.enqueue("1", "first", content_hash_for("first"))
        pipeline.enqueue("1", "second", content_hash_for("second"))
        await pipeline.start()
        await pipeline.wait_idle()
        await pipeline.stop()

        assert provider.calls == [["second"]]
        assert (await store.get("1"))["embedding_vector"] == FakeProvider.vector_for("second")
        assert pipeline.completed == pipeline.total == 2

    @pytest.mark.asyncio
    async def test_deleted_item_not_written(self):
        store = InMemoryRecordStore()
        await add_item(store, "1", "gone")
        await store.update("1", {"is_deleted": True})

        pipeline = make_pipeline(store, FakeProvider())
        await pipeline.start()
        pipeline.enqueue("1", "gone", content_hash_for("gone"))
        await pipeline.wait_idle()
        await pipeline.stop()

        assert (await store.get("1"))["embedding_vector"] is None

    @pytest.mark.asyncio
    async def test_long_text_is_mean_pooled(self):
        store = InMemoryRecordStore()
        provider = FakeProvider()
        text = "a" * 30 + "e" * 30
        await add_item(store, "1", text)

        pipeline = make_pipeline(store, provider, chunk_chars=30, chunk_overlap=0)
        await pipeline.start()
        pipeline.enqueue("1", text, content_hash_for(text))
        await pipeline.wait_idle()
        await pipeline.stop()

        assert provider.calls == [["a" * 30, "e" * 30]]
        assert (await store.get("1"))["embedding_vector"] == [15.0, 15.0, 0.0, 0.0, 0.0, 1.0]

    @pytest.mark.asyncio
    async def test_enqueue_returns_immediately(self):
        store = InMemoryRecordStore()
        pipeline = make_pipeline(store, FakeProvider())

        job = pipeline.enqueue("1", "text", content_hash_for("text"))

        assert job.state == "queued"
        assert pipeline.total == 1
        assert pipeline.pending == 1


class TestOllamaEmbeddingProvider:

    @pytest.mark.asyncio
    async def test_posts_to_embed_endpoint(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"embeddings": [[0.1, 0.2], [0.3, 0.4]]})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        provider = OllamaEmbeddingProvider(model="nomic-embed-text", base_url="http://ollama:11434/", client=client)

        vectors = await provider.embed_batch(["a", "b"])

        assert vectors == [[0.1, 0.2], [0.3, 0.4]]
        assert str(requests[0].url) == "http://ollama:11434/api/embed"
        assert b'"model":"nomic-embed-text"' in requests[0].content.replace(b" ", b"")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_length_mismatch_raises(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"embeddings": [[0.1]]})
        ))
        provider = OllamaEmbeddingProvider(client=client)

        with pytest.raises(EmbeddingFailure):
            await provider.embed_batch(["a", "b"])
        await client.aclose()

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(500, json={"error": "model not loaded"})
        ))
        provider = OllamaEmbeddingProvider(client=client)

        with pytest.raises(EmbeddingFailure):
            await provider.embed_batch(["a"])
        await client.aclose()
