import asyncio
import time
from typing import List

import pytest

from storage_api.errors import AnalysisFailed
from tagging_workers.taggers import BaseTagger
from tagging_workers.worker import EnrichmentWorker, JobState

PNG_BYTES = b"\x00" * 10


class FixedTagger(BaseTagger):
    def __init__(self, tags: List[str]):
        self.tags = tags

    def analyze(self, data: bytes) -> List[str]:
        return list(self.tags)


class FailingTagger(BaseTagger):
    def analyze(self, data: bytes) -> List[str]:
        raise AnalysisFailed("vision service rejected the image")


class SlowTagger(BaseTagger):
    def analyze(self, data: bytes) -> List[str]:
        time.sleep(0.5)
        return ["late"]


def make_worker(worker, tagger, **overrides):
    options = dict(
        queue=worker.queue,
        storage=worker.storage,
        metadata_store=worker.metadata_store,
        tagger=tagger,
        concurrency=worker.concurrency,
        poll_interval=0,
        analysis_timeout=worker.analysis_timeout,
        temp_dir=str(worker.temp_dir),
    )
    options.update(overrides)
    return EnrichmentWorker(**options)


async def test_image_job_is_tagged_and_acked(ingestion_service, worker, local_queue, metadata_store, stub_tagger):
    record = await ingestion_service.ingest(PNG_BYTES, "a.png", "image/png")

    [outcome] = await worker.run_until_empty()

    assert outcome.state == JobState.PERSISTED
    assert outcome.history == [
        JobState.RECEIVED,
        JobState.BYTES_RESOLVED,
        JobState.ANALYZED,
        JobState.PERSISTED,
    ]
    assert outcome.record_id == record.id
    assert metadata_store.get_by_id(record.id).tags == ["blank"]
    assert stub_tagger.calls == [PNG_BYTES]
    assert local_queue.pending_count() == 0
    assert local_queue.inflight_count() == 0


async def test_redelivered_job_rewrites_same_tags(ingestion_service, worker, local_queue, metadata_store):
    record = await ingestion_service.ingest(PNG_BYTES, "a.png", "image/png")
    task = await local_queue.get_task()

    first = await worker.process_task(task)
    second = await worker.process_task(task)

    assert first.state == second.state == JobState.PERSISTED
    assert metadata_store.get_by_id(record.id).tags == ["blank"]


async def test_duplicate_labels_are_collapsed(ingestion_service, worker, metadata_store):
    record = await ingestion_service.ingest(PNG_BYTES, "a.png", "image/png")
    tagging_worker = make_worker(worker, FixedTagger(["Sky", "Sea", "Sky"]))

    await tagging_worker.run_until_empty()

    assert metadata_store.get_by_id(record.id).tags == ["Sky", "Sea"]


async def test_no_labels_is_a_success(ingestion_service, worker, metadata_store, local_queue):
    record = await ingestion_service.ingest(PNG_BYTES, "a.png", "image/png")
    tagging_worker = make_worker(worker, FixedTagger([]))

    [outcome] = await tagging_worker.run_until_empty()

    assert outcome.state == JobState.PERSISTED
    assert metadata_store.get_by_id(record.id).tags == []
    assert local_queue.inflight_count() == 0


async def test_analysis_failure_leaves_job_for_redelivery(ingestion_service, worker, metadata_store, local_queue):
    record = await ingestion_service.ingest(PNG_BYTES, "a.png", "image/png")
    tagging_worker = make_worker(worker, FailingTagger())

    [outcome] = await tagging_worker.run_until_empty()

    assert outcome.state == JobState.FAILED
    assert outcome.history[-2:] == [JobState.BYTES_RESOLVED, JobState.FAILED]
    assert "analysis_failed" in outcome.error
    assert not outcome.should_ack
    assert metadata_store.get_by_id(record.id).tags is None
    assert local_queue.inflight_count() == 1


async def test_analysis_timeout(ingestion_service, worker, metadata_store):
    record = await ingestion_service.ingest(PNG_BYTES, "a.png", "image/png")
    tagging_worker = make_worker(worker, SlowTagger(), analysis_timeout=0.05)

    [outcome] = await tagging_worker.run_until_empty()

    assert outcome.state == JobState.FAILED
    assert "timed out" in outcome.error
    assert metadata_store.get_by_id(record.id).tags is None


async def test_deleted_record_job_is_dropped(ingestion_service, worker, metadata_store, local_queue):
    record = await ingestion_service.ingest(PNG_BYTES, "a.png", "image/png")
    metadata_store.delete_by_id(record.id)

    [outcome] = await worker.run_until_empty()

    assert outcome.state == JobState.FAILED
    assert outcome.should_ack
    assert local_queue.inflight_count() == 0


async def test_missing_object_job_is_dropped(ingestion_service, worker, local_storage, local_queue, stub_tagger):
    record = await ingestion_service.ingest(PNG_BYTES, "a.png", "image/png")
    local_storage.delete(record.storage_key)

    [outcome] = await worker.run_until_empty()

    assert outcome.state == JobState.FAILED
    assert "object_not_found" in outcome.error
    assert outcome.should_ack
    assert stub_tagger.calls == []
    assert local_queue.inflight_count() == 0


async def test_foreign_backend_reference_is_dropped(worker, local_queue):
    await local_queue.add_task({"task_type": "tag_image", "storage_ref": "s3://other-bucket/a.png", "record_id": 1})

    [outcome] = await worker.run_until_empty()

    assert outcome.state == JobState.FAILED
    assert "backend_mismatch" in outcome.error
    assert local_queue.inflight_count() == 0


async def test_malformed_payload_is_dropped(worker, local_queue):
    await local_queue.add_task({"task_type": "tag_image", "record_id": "not-a-number"})

    [outcome] = await worker.run_until_empty()

    assert outcome.state == JobState.FAILED
    assert outcome.error.startswith("malformed payload")
    assert local_queue.inflight_count() == 0


async def test_unknown_task_type_is_dropped(worker, local_queue, stub_tagger):
    await local_queue.add_task({"task_type": "process_invoice", "file_info": {}})

    [outcome] = await worker.run_until_empty()

    assert outcome.state == JobState.FAILED
    assert stub_tagger.calls == []
    assert local_queue.inflight_count() == 0


async def test_jobs_run_concurrently(ingestion_service, worker, metadata_store):
    records = [
        await ingestion_service.ingest(PNG_BYTES, f"image-{i}.png", "image/png")
        for i in range(5)
    ]

    outcomes = await worker.run_until_empty()

    assert len(outcomes) == 5
    assert all(outcome.state == JobState.PERSISTED for outcome in outcomes)
    assert all(metadata_store.get_by_id(record.id).tags == ["blank"] for record in records)


async def test_listen_for_tasks_until_stopped(ingestion_service, worker, metadata_store):
    listener = asyncio.create_task(worker.listen_for_tasks())
    record = await ingestion_service.ingest(PNG_BYTES, "a.png", "image/png")

    for _ in range(100):
        if metadata_store.get_by_id(record.id).tags is not None:
            break
        await asyncio.sleep(0.05)

    worker.stop()
    await asyncio.wait_for(listener, timeout=5)
    assert metadata_store.get_by_id(record.id).tags == ["blank"]


class FlakyReceiveQueue:
    """Delivers from the wrapped queue once, then fails every receive."""

    def __init__(self, queue):
        self.queue = queue
        self.receives = 0

    async def get_task(self):
        self.receives += 1
        if self.receives > 1:
            raise RuntimeError("queue connection reset")
        return await self.queue.get_task()

    async def ack_task(self, task):
        return await self.queue.ack_task(task)


async def test_receive_error_waits_for_started_jobs(ingestion_service, worker, metadata_store, local_queue):
    record = await ingestion_service.ingest(PNG_BYTES, "a.png", "image/png")
    draining_worker = make_worker(worker, worker.tagger, queue=FlakyReceiveQueue(local_queue))

    with pytest.raises(RuntimeError, match="connection reset"):
        await draining_worker.run_until_empty()

    assert metadata_store.get_by_id(record.id).tags == ["blank"]
    assert local_queue.pending_count() == 0
    assert local_queue.inflight_count() == 0


###########################
# --- Remote (S3/SQS) --- #
###########################

async def test_remote_job_downloads_and_cleans_up(s3_storage, sqs_queue, metadata_store, stub_tagger, tmp_path):
    from storage_api.services import IngestionService

    ingestion = IngestionService(s3_storage, metadata_store, sqs_queue)
    record = await ingestion.ingest(PNG_BYTES, "a.png", "image/png")
    temp_dir = tmp_path / "worker-tmp"
    remote_worker = EnrichmentWorker(
        queue=sqs_queue,
        storage=s3_storage,
        metadata_store=metadata_store,
        tagger=stub_tagger,
        poll_interval=0,
        temp_dir=str(temp_dir),
    )

    [outcome] = await remote_worker.run_until_empty()

    assert outcome.state == JobState.PERSISTED
    assert metadata_store.get_by_id(record.id).tags == ["blank"]
    assert list(temp_dir.iterdir()) == []
    assert await sqs_queue.get_task() is None


async def test_remote_missing_object_cleans_up(s3_storage, sqs_queue, metadata_store, stub_tagger, tmp_path):
    await sqs_queue.add_task({
        "task_type": "tag_image",
        "storage_ref": f"s3://{s3_storage.bucket_name}/1718000000000-deadbeef-gone.png",
        "record_id": 1,
    })
    temp_dir = tmp_path / "worker-tmp"
    remote_worker = EnrichmentWorker(
        queue=sqs_queue,
        storage=s3_storage,
        metadata_store=metadata_store,
        tagger=stub_tagger,
        poll_interval=0,
        temp_dir=str(temp_dir),
    )

    [outcome] = await remote_worker.run_until_empty()

    assert outcome.state == JobState.FAILED
    assert outcome.should_ack
    assert list(temp_dir.iterdir()) == []
