import asyncio
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from storage_api.adapters.aws_clients import get_sqs_client
from storage_api.errors import EnqueueFailed
from storage_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class QueuedTask:
    """A received message. Stays invisible to other consumers until acked or expired."""
    body: Dict[str, Any]
    message_id: str
    receipt: str
    receive_count: int = 1


class BaseQueue:
    """Base class for queue handling (to be extended by specific implementations)"""
    async def add_task(self, task: Dict[str, Any]) -> str:
        """Enqueue a task, returning its message id. Raises EnqueueFailed."""
        raise NotImplementedError

    async def get_task(self) -> Optional[QueuedTask]:
        raise NotImplementedError

    async def ack_task(self, task: QueuedTask) -> None:
        """Remove a processed task so it is not delivered again."""
        raise NotImplementedError

    def ping(self) -> None:
        """Raise if the queue is unreachable."""


class LocalQueue(BaseQueue):
    """Handles local queue using file system for IPC"""
    def __init__(self, queue_dir: str, visibility_timeout: int = 300, max_receive_count: int = 5):
        self.queue_dir = Path(queue_dir)
        self.inflight_dir = self.queue_dir / "inflight"
        self.error_dir = self.queue_dir / "errors"
        for directory in (self.queue_dir, self.inflight_dir, self.error_dir):
            directory.mkdir(parents=True, exist_ok=True)
        self.visibility_timeout = visibility_timeout
        self.max_receive_count = max_receive_count
        logger.info("LocalQueue initialized at: %s", self.queue_dir)

    async def add_task(self, task):
        """Add task to queue"""
        # Timestamp prefix keeps FIFO order when sorted by name
        message_id = f"{int(time.time() * 1000)}_{os.getpid()}_{uuid.uuid4().hex[:8]}"
        filepath = self.queue_dir / f"{message_id}.json"
        tmp_path = self.queue_dir / f".{message_id}.tmp"
        try:
            with open(tmp_path, 'w') as f:
                json.dump({"body": task, "receive_count": 0}, f)
            os.replace(tmp_path, filepath)
        except (OSError, TypeError, ValueError) as e:
            logger.error("Error adding task to queue: %s", str(e))
            tmp_path.unlink(missing_ok=True)
            raise EnqueueFailed(f"Could not enqueue task: {e}") from e

        logger.info("Added task to queue: %s", task)
        return message_id

    def _requeue_expired(self) -> None:
        """Return in-flight tasks whose visibility timeout has lapsed."""
        now = time.time()
        for task_file in self.inflight_dir.glob("*.json"):
            try:
                if now - task_file.stat().st_mtime >= self.visibility_timeout:
                    os.replace(task_file, self.queue_dir / task_file.name)
                    logger.warning("Visibility timeout expired, requeued: %s", task_file.name)
            except FileNotFoundError:
                continue

    def _move_to_errors(self, task_file: Path, reason: str) -> None:
        logger.error("Moving task %s to errors: %s", task_file.name, reason)
        try:
            os.replace(task_file, self.error_dir / task_file.name)
        except FileNotFoundError:
            pass

    async def get_task(self):
        """Get next task from queue"""
        self._requeue_expired()

        for task_file in sorted(self.queue_dir.glob("*.json")):
            claimed = self.inflight_dir / task_file.name
            try:
                # Rename is atomic: only one consumer wins the claim
                os.replace(task_file, claimed)
            except FileNotFoundError:
                continue

            try:
                with open(claimed, 'r') as f:
                    envelope = json.load(f)
                body = envelope["body"]
                receive_count = int(envelope.get("receive_count", 0)) + 1
            except (OSError, ValueError, KeyError, TypeError) as e:
                self._move_to_errors(claimed, f"unreadable task file ({e})")
                continue

            if receive_count > self.max_receive_count:
                self._move_to_errors(claimed, f"received {receive_count - 1} times without ack")
                continue

            # Rewriting also refreshes mtime, which starts the visibility clock
            with open(claimed, 'w') as f:
                json.dump({"body": body, "receive_count": receive_count}, f)

            logger.info("Retrieved task from queue: %s", body)
            return QueuedTask(
                body=body,
                message_id=claimed.stem,
                receipt=claimed.name,
                receive_count=receive_count,
            )

        await asyncio.sleep(0.1)  # Prevent busy waiting
        return None

    async def ack_task(self, task):
        (self.inflight_dir / task.receipt).unlink(missing_ok=True)
        logger.debug("Acked task %s", task.message_id)

    def pending_count(self) -> int:
        return len(list(self.queue_dir.glob("*.json")))

    def inflight_count(self) -> int:
        return len(list(self.inflight_dir.glob("*.json")))

    def ping(self) -> None:
        if not os.access(self.queue_dir, os.W_OK):
            raise EnqueueFailed(f"Queue directory is not writable: {self.queue_dir}")


class SQSQueue(BaseQueue):
    """Handles AWS SQS queue"""
    def __init__(self, settings: Optional[Settings] = None, sqs_client=None):
        settings = settings or get_settings()

        self.sqs = sqs_client or get_sqs_client(settings)
        self.queue_url = settings.sqs_queue_url or self.sqs.get_queue_url(
            QueueName=settings.sqs_queue_name
        )["QueueUrl"]
        self.wait_time_seconds = settings.sqs_wait_time_seconds
        self.visibility_timeout = settings.queue_visibility_timeout_seconds

        logger.info("SQSQueue initialized")
        logger.info("  Queue URL: %s", self.queue_url)
        logger.info("  Region: %s", settings.aws_region)

    async def add_task(self, task):
        """Add a task to the SQS queue."""
        try:
            response = await asyncio.to_thread(
                self.sqs.send_message,
                QueueUrl=self.queue_url,
                MessageBody=json.dumps(task),
            )
        except (ClientError, BotoCoreError, TypeError, ValueError) as e:
            logger.error("Error adding task to SQS queue: %s", str(e))
            raise EnqueueFailed(f"Could not enqueue task: {e}") from e
        message_id = response.get('MessageId')
        logger.info("Task added to SQS queue with ID: %s", message_id)
        return message_id

    async def get_task(self):
        messages = await asyncio.to_thread(
            self.sqs.receive_message,
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=1,
            WaitTimeSeconds=self.wait_time_seconds,
            VisibilityTimeout=self.visibility_timeout,
            AttributeNames=["ApproximateReceiveCount"],
        )
        if "Messages" not in messages:
            return None

        message = messages["Messages"][0]
        try:
            body = json.loads(message["Body"])
        except ValueError:
            logger.error("Discarding malformed SQS message %s: %r", message["MessageId"], message["Body"])
            body = {}
        task = QueuedTask(
            body=body,
            message_id=message["MessageId"],
            receipt=message["ReceiptHandle"],
            receive_count=int(message.get("Attributes", {}).get("ApproximateReceiveCount", 1)),
        )
        logger.info("Retrieved task from SQS queue: %s", task.body)
        return task

    async def ack_task(self, task):
        await asyncio.to_thread(
            self.sqs.delete_message,
            QueueUrl=self.queue_url,
            ReceiptHandle=task.receipt,
        )
        logger.debug("Deleted SQS message %s", task.message_id)

    def ping(self) -> None:
        self.sqs.get_queue_attributes(QueueUrl=self.queue_url, AttributeNames=["QueueArn"])


class QueueFactory:
    """Factory to initialize the correct queue handler based on deployment mode"""

    @staticmethod
    def get_queue_handler(settings: Optional[Settings] = None) -> BaseQueue:
        settings = settings or get_settings()

        logger.info("Creating queue handler for mode: %s", settings.deployment_mode)
        if settings.uses_aws:
            return SQSQueue(settings)
        return LocalQueue(
            queue_dir=str(Path(settings.storage_dir) / "queue_data"),
            visibility_timeout=settings.queue_visibility_timeout_seconds,
            max_receive_count=settings.queue_max_receive_count,
        )
