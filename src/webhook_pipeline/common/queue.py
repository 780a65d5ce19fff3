import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict, deque
from typing import Any, Callable, Deque, Dict, Optional, Tuple

from loguru import logger
from pydantic import ValidationError

from webhook_pipeline.common.config import AWSSQSConfig, GCPPubSubConfig, QueueType
from webhook_pipeline.common.metrics import notify_lifecycle
from webhook_pipeline.common.models import WebhookJob

# SQS caps visibility at 12 hours, Pub/Sub ack deadlines at 10 minutes
SQS_MAX_VISIBILITY = 43200
PUBSUB_MAX_ACK_DEADLINE = 600


def compute_backoff(attempts: int, base: float, cap: float) -> float:
    """Delay before the next attempt after ``attempts`` failed ones."""
    return min(cap, base * (2 ** max(attempts - 1, 0)))


class QueueClient(ABC):
    """Durable job queue keyed by dedupe key.

    ``receive`` claims a job under a lease and increments its ``attempts``;
    the claim ends with exactly one of ``ack``, ``retry``, ``dead_letter`` or
    ``release``. A lease that is never ended expires and the job becomes
    eligible again.
    """

    @abstractmethod
    async def enqueue(self, job: WebhookJob) -> Optional[str]:
        """Record a job; ``None`` when the dedupe key is already queued."""

    @abstractmethod
    async def receive(self, wait_seconds: float = 0) -> Optional[WebhookJob]:
        pass

    @abstractmethod
    async def ack(self, job: WebhookJob) -> None:
        pass

    @abstractmethod
    async def retry(self, job: WebhookJob, delay: float) -> None:
        pass

    @abstractmethod
    async def dead_letter(self, job: WebhookJob) -> None:
        pass

    @abstractmethod
    async def release(self, job: WebhookJob) -> None:
        pass

    async def stats(self) -> Dict[str, int]:
        return {}

    async def close(self) -> None:
        pass


class InMemoryQueueClient(QueueClient):
    """Single-process queue with the same contract as the broker clients.

    At most one job per dedupe key is active (waiting, delayed or leased)
    at any time, so a key can never be executed by two consumers at once.
    A consumer whose lease expired loses its claim: its later ``ack`` or
    ``retry`` is ignored and the job runs again.
    """

    def __init__(
        self,
        lease_timeout: float = 120.0,
        retain_completed: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.lease_timeout = lease_timeout
        self.retain_completed = retain_completed
        self.clock = clock

        self._jobs: Dict[str, WebhookJob] = {}
        self._ready: Deque[str] = deque()
        self._delayed: Dict[str, float] = {}
        self._leases: Dict[str, Tuple[float, str]] = {}
        self._completed: "OrderedDict[str, float]" = OrderedDict()
        self.dead: Dict[str, WebhookJob] = {}
        self._lock = asyncio.Lock()

    async def enqueue(self, job: WebhookJob) -> Optional[str]:
        async with self._lock:
            key = job.dedupe_key
            if key in self._jobs or key in self._completed:
                logger.debug(f"Job {key} already queued, ignoring duplicate")
                return None
            self.dead.pop(key, None)
            self._jobs[key] = job.model_copy(deep=True)
            self._ready.append(key)
        notify_lifecycle("enqueued", key, job.event_type)
        return key

    def _promote(self, now: float) -> None:
        for key, available_at in list(self._delayed.items()):
            if available_at <= now:
                del self._delayed[key]
                self._ready.append(key)
        for key, (expires_at, _) in list(self._leases.items()):
            if expires_at <= now:
                del self._leases[key]
                logger.warning(f"Lease on job {key} expired, making it eligible again")
                self._ready.append(key)

    def _holds_lease(self, job: WebhookJob) -> bool:
        lease = self._leases.get(job.dedupe_key)
        if lease is None or lease[1] != job._receipt:
            logger.warning(f"Job {job.dedupe_key} is no longer leased by this consumer")
            return False
        return True

    async def receive(self, wait_seconds: float = 0) -> Optional[WebhookJob]:
        async with self._lock:
            self._promote(self.clock())
            while self._ready:
                key = self._ready.popleft()
                job = self._jobs.get(key)
                if job is None or key in self._leases or key in self._delayed:
                    continue
                job.attempts += 1
                token = str(uuid.uuid4())
                self._leases[key] = (self.clock() + self.lease_timeout, token)
                claimed = job.model_copy(deep=True)
                claimed._receipt = token
                return claimed
            return None

    async def ack(self, job: WebhookJob) -> None:
        async with self._lock:
            if not self._holds_lease(job):
                return
            key = job.dedupe_key
            del self._leases[key]
            self._jobs.pop(key, None)
            self._completed[key] = self.clock()
            while len(self._completed) > self.retain_completed:
                self._completed.popitem(last=False)

    async def retry(self, job: WebhookJob, delay: float) -> None:
        async with self._lock:
            if not self._holds_lease(job):
                return
            del self._leases[job.dedupe_key]
            self._delayed[job.dedupe_key] = self.clock() + delay

    async def dead_letter(self, job: WebhookJob) -> None:
        async with self._lock:
            if not self._holds_lease(job):
                return
            key = job.dedupe_key
            del self._leases[key]
            self.dead[key] = self._jobs.pop(key, job)

    async def release(self, job: WebhookJob) -> None:
        async with self._lock:
            if not self._holds_lease(job):
                return
            del self._leases[job.dedupe_key]
            self._ready.appendleft(job.dedupe_key)

    async def stats(self) -> Dict[str, int]:
        async with self._lock:
            return {
                "waiting": len(self._ready),
                "delayed": len(self._delayed),
                "active": len(self._leases),
                "completed": len(self._completed),
                "dead": len(self.dead),
            }


class AWSSQSClient(QueueClient):
    """SQS FIFO queue: the dedupe key is both the deduplication and group id."""

    def __init__(self, config: AWSSQSConfig, lease_timeout: float = 120.0):
        try:
            import boto3
        except ImportError:
            raise ImportError(
                "AWS SQS client not installed. "
                "Install it with: pip install boto3"
            )

        session_kwargs = {}
        if config.access_key_id and config.secret_access_key:
            session_kwargs.update({
                "aws_access_key_id": config.access_key_id,
                "aws_secret_access_key": config.secret_access_key,
            })

        session = boto3.session.Session(**session_kwargs)

        client_kwargs = {"region_name": config.region_name}
        if config.role_arn:
            sts_client = session.client("sts", **client_kwargs)
            assumed_role = sts_client.assume_role(
                RoleArn=config.role_arn,
                RoleSessionName="webhook-pipeline-session"
            )
            client_kwargs.update({
                "aws_access_key_id": assumed_role["Credentials"]["AccessKeyId"],
                "aws_secret_access_key": assumed_role["Credentials"]["SecretAccessKey"],
                "aws_session_token": assumed_role["Credentials"]["SessionToken"],
            })

        self.sqs = session.client("sqs", **client_kwargs)
        self.queue_url = config.queue_url
        self.dead_letter_queue_url = config.dead_letter_queue_url
        self.lease_timeout = int(lease_timeout)

        logger.info(f"Initialized AWS SQS client for queue {self.queue_url}")

    async def enqueue(self, job: WebhookJob) -> Optional[str]:
        try:
            response = await asyncio.to_thread(
                self.sqs.send_message,
                QueueUrl=self.queue_url,
                MessageBody=job.model_dump_json(),
                MessageDeduplicationId=job.dedupe_key,
                MessageGroupId=job.dedupe_key,
            )
        except Exception as e:
            logger.error(f"Error publishing job {job.dedupe_key} to {self.queue_url}: {e}")
            raise
        notify_lifecycle("enqueued", job.dedupe_key, job.event_type)
        return response["MessageId"]

    async def receive(self, wait_seconds: float = 0) -> Optional[WebhookJob]:
        try:
            response = await asyncio.to_thread(
                self.sqs.receive_message,
                QueueUrl=self.queue_url,
                MaxNumberOfMessages=1,
                WaitTimeSeconds=int(wait_seconds),
                VisibilityTimeout=self.lease_timeout,
                AttributeNames=["ApproximateReceiveCount"],
            )
        except Exception as e:
            logger.error(f"Error receiving message from {self.queue_url}: {e}")
            return None

        if not response.get("Messages"):
            return None

        message = response["Messages"][0]
        try:
            job = WebhookJob.model_validate_json(message["Body"])
        except ValidationError as e:
            logger.error(f"Unreadable message {message.get('MessageId')} on {self.queue_url}: {e}")
            await self._dead_letter_raw(message)
            return None
        job.attempts += int(message.get("Attributes", {}).get("ApproximateReceiveCount", 1))
        job._receipt = message["ReceiptHandle"]
        logger.debug(f"Received job {job.dedupe_key} from {self.queue_url}")
        return job

    async def ack(self, job: WebhookJob) -> None:
        receipt_handle = job._receipt
        if not receipt_handle:
            logger.error(f"No receipt handle found for job {job.dedupe_key}")
            return
        await asyncio.to_thread(
            self.sqs.delete_message, QueueUrl=self.queue_url, ReceiptHandle=receipt_handle
        )

    async def _change_visibility(self, job: WebhookJob, timeout: int) -> None:
        receipt_handle = job._receipt
        if not receipt_handle:
            logger.error(f"No receipt handle found for job {job.dedupe_key}")
            return
        await asyncio.to_thread(
            self.sqs.change_message_visibility,
            QueueUrl=self.queue_url,
            ReceiptHandle=receipt_handle,
            VisibilityTimeout=timeout,
        )

    async def retry(self, job: WebhookJob, delay: float) -> None:
        await self._change_visibility(job, min(int(delay), SQS_MAX_VISIBILITY))

    async def release(self, job: WebhookJob) -> None:
        await self._change_visibility(job, 0)

    async def _dead_letter_raw(self, message: Dict[str, Any]) -> None:
        if self.dead_letter_queue_url:
            await asyncio.to_thread(
                self.sqs.send_message,
                QueueUrl=self.dead_letter_queue_url,
                MessageBody=message["Body"],
                MessageDeduplicationId=str(uuid.uuid4()),
                MessageGroupId="unreadable",
            )
        await asyncio.to_thread(
            self.sqs.delete_message,
            QueueUrl=self.queue_url,
            ReceiptHandle=message["ReceiptHandle"],
        )

    async def dead_letter(self, job: WebhookJob) -> None:
        if self.dead_letter_queue_url:
            await asyncio.to_thread(
                self.sqs.send_message,
                QueueUrl=self.dead_letter_queue_url,
                MessageBody=job.model_dump_json(),
                MessageDeduplicationId=f"{job.dedupe_key}-{uuid.uuid4()}",
                MessageGroupId=job.dedupe_key,
            )
        await self.ack(job)

    async def stats(self) -> Dict[str, int]:
        response = await asyncio.to_thread(
            self.sqs.get_queue_attributes,
            QueueUrl=self.queue_url,
            AttributeNames=[
                "ApproximateNumberOfMessages",
                "ApproximateNumberOfMessagesNotVisible",
                "ApproximateNumberOfMessagesDelayed",
            ],
        )
        attributes = response.get("Attributes", {})
        return {
            "waiting": int(attributes.get("ApproximateNumberOfMessages", 0)),
            "active": int(attributes.get("ApproximateNumberOfMessagesNotVisible", 0)),
            "delayed": int(attributes.get("ApproximateNumberOfMessagesDelayed", 0)),
        }


class GCPPubSubClient(QueueClient):
    """Pub/Sub topic with message ordering on the dedupe key."""

    def __init__(self, config: GCPPubSubConfig):
        try:
            from google.cloud import pubsub_v1
        except ImportError:
            raise ImportError(
                "Google Cloud Pub/Sub client not installed. "
                "Install it with: pip install google-cloud-pubsub"
            )

        self.project_id = config.project_id
        self.topic_id = config.topic_id
        self.subscription_id = config.subscription_id

        self.publisher = pubsub_v1.PublisherClient(
            publisher_options=pubsub_v1.types.PublisherOptions(enable_message_ordering=True)
        )
        self.topic_path = self.publisher.topic_path(self.project_id, self.topic_id)
        self.dead_letter_topic_path = (
            self.publisher.topic_path(self.project_id, config.dead_letter_topic_id)
            if config.dead_letter_topic_id
            else None
        )

        if self.subscription_id:
            self.subscriber = pubsub_v1.SubscriberClient()
            self.subscription_path = self.subscriber.subscription_path(
                self.project_id, self.subscription_id
            )
        else:
            self.subscriber = None
            self.subscription_path = None

        logger.info(f"Initialized GCP Pub/Sub client for topic {self.topic_path}")

    def _require_subscription(self) -> None:
        if not self.subscriber or not self.subscription_path:
            raise RuntimeError("Subscription ID not configured for receiving messages")

    async def _publish(self, topic_path: str, job: WebhookJob) -> str:
        try:
            future = self.publisher.publish(
                topic_path,
                job.model_dump_json().encode("utf-8"),
                ordering_key=job.dedupe_key,
                dedupe_key=job.dedupe_key,
                event_type=job.event_type,
            )
            return await asyncio.to_thread(future.result)
        except Exception:
            # A failed publish pauses the ordering key until it is resumed
            self.publisher.resume_publish(topic_path, job.dedupe_key)
            raise

    async def enqueue(self, job: WebhookJob) -> Optional[str]:
        try:
            message_id = await self._publish(self.topic_path, job)
        except Exception as e:
            logger.error(f"Error publishing job {job.dedupe_key} to {self.topic_path}: {e}")
            raise
        notify_lifecycle("enqueued", job.dedupe_key, job.event_type)
        return message_id

    async def receive(self, wait_seconds: float = 0) -> Optional[WebhookJob]:
        self._require_subscription()
        try:
            response = await asyncio.to_thread(
                self.subscriber.pull,
                request={"subscription": self.subscription_path, "max_messages": 1},
                timeout=max(wait_seconds, 1),
            )
        except Exception as e:
            logger.error(f"Error receiving message from {self.subscription_path}: {e}")
            return None

        if not response.received_messages:
            return None

        received_message = response.received_messages[0]
        try:
            job = WebhookJob.model_validate_json(received_message.message.data.decode("utf-8"))
        except (ValidationError, UnicodeDecodeError) as e:
            logger.error(f"Unreadable message on {self.subscription_path}: {e}")
            await self._dead_letter_raw(received_message)
            return None
        # delivery_attempt is only populated when the subscription has a dead letter policy
        job.attempts += received_message.delivery_attempt or 1
        job._receipt = received_message.ack_id
        logger.debug(f"Received job {job.dedupe_key} from {self.subscription_path}")
        return job

    async def ack(self, job: WebhookJob) -> None:
        self._require_subscription()
        ack_id = job._receipt
        if not ack_id:
            logger.error(f"No ack_id found for job {job.dedupe_key}")
            return
        await asyncio.to_thread(
            self.subscriber.acknowledge,
            request={"subscription": self.subscription_path, "ack_ids": [ack_id]},
        )

    async def _modify_deadline(self, job: WebhookJob, seconds: int) -> None:
        self._require_subscription()
        ack_id = job._receipt
        if not ack_id:
            logger.error(f"No ack_id found for job {job.dedupe_key}")
            return
        await asyncio.to_thread(
            self.subscriber.modify_ack_deadline,
            request={
                "subscription": self.subscription_path,
                "ack_ids": [ack_id],
                "ack_deadline_seconds": seconds,
            },
        )

    async def retry(self, job: WebhookJob, delay: float) -> None:
        await self._modify_deadline(job, min(int(delay), PUBSUB_MAX_ACK_DEADLINE))

    async def release(self, job: WebhookJob) -> None:
        await self._modify_deadline(job, 0)

    async def _dead_letter_raw(self, received_message: Any) -> None:
        if self.dead_letter_topic_path:
            future = self.publisher.publish(
                self.dead_letter_topic_path, received_message.message.data
            )
            await asyncio.to_thread(future.result)
        await asyncio.to_thread(
            self.subscriber.acknowledge,
            request={"subscription": self.subscription_path, "ack_ids": [received_message.ack_id]},
        )

    async def dead_letter(self, job: WebhookJob) -> None:
        if self.dead_letter_topic_path:
            await self._publish(self.dead_letter_topic_path, job)
        await self.ack(job)

    async def close(self) -> None:
        if self.subscriber:
            self.subscriber.close()


def create_queue_client(
    queue_type: QueueType,
    gcp_config: Optional[GCPPubSubConfig] = None,
    aws_config: Optional[AWSSQSConfig] = None,
    lease_timeout: float = 120.0,
) -> QueueClient:
    if queue_type == QueueType.MEMORY:
        return InMemoryQueueClient(lease_timeout=lease_timeout)
    elif queue_type == QueueType.GCP_PUBSUB:
        if not gcp_config:
            raise ValueError("GCP PubSub selected but no GCP configuration provided")
        return GCPPubSubClient(gcp_config)
    elif queue_type == QueueType.AWS_SQS:
        if not aws_config:
            raise ValueError("AWS SQS selected but no AWS configuration provided")
        return AWSSQSClient(aws_config, lease_timeout=lease_timeout)
    else:
        raise ValueError(f"Unsupported queue type: {queue_type}")
