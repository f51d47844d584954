"""Queue bridge: moves source-queue messages onto the primary job queue."""

import logging
import time
from typing import Any, Dict, Optional

from job_delivery.config import JobDeliveryConfig
from job_delivery.errors import ConfigurationError
from job_delivery.messages import UnifiedJobMessage
from job_delivery.models import JobCreationMode
from job_delivery.normalize import normalize_source_message
from job_delivery.service import JobService


class QueueBridge:
    """
    Polls named source queues and forwards their messages in unified form.

    A source message is deleted only after it has been forwarded. When the
    forward fails, the normalized message is stored as a job and the source
    message is left on its queue.
    """

    def __init__(
        self,
        config: JobDeliveryConfig,
        sqs_client: Any,
        job_service: JobService,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.sqs_client = sqs_client
        self.job_service = job_service
        self.logger = logger or logging.getLogger(__name__)

    async def poll_queue(self, queue_name: str, limit: Optional[int] = None) -> int:
        """
        Poll one source queue.

        Args:
            queue_name: Configured source queue name
            limit: Maximum messages to receive (capped at 10); defaults to the
                queue's configured batch size

        Returns:
            int: Number of messages forwarded to the primary queue

        Raises:
            SourceQueueNotFoundError: If the queue name is not configured
        """
        start = time.monotonic()
        queue_config = self.config.get_source_queue(queue_name)

        if not queue_config.enabled:
            self.logger.warning(f'Queue "{queue_name}" is disabled in configuration')
            return 0

        if not queue_config.queue_url:
            self.logger.warning(f'Queue URL not configured for "{queue_name}"')
            return 0

        max_messages = min(limit, 10) if limit is not None else queue_config.max_messages

        try:
            response = await self.sqs_client.receive_message(
                QueueUrl=queue_config.queue_url,
                MaxNumberOfMessages=max(1, max_messages),
                VisibilityTimeout=queue_config.visibility_timeout,
                WaitTimeSeconds=0,
            )
        except Exception as e:
            self.logger.error(
                f"[{queue_name}] Failed to receive messages: {str(e)}",
                extra={"event": "queue_poll_error", "queue_name": queue_name},
            )
            raise

        messages = response.get("Messages", [])
        if messages:
            self.logger.info(f"[{queue_name}] Received {len(messages)} messages")

        forwarded = 0
        failed = 0
        for sqs_message in messages:
            message = normalize_source_message(sqs_message.get("Body"), queue_name)

            try:
                await self._forward(message)
            except Exception as e:
                failed += 1
                self.logger.error(
                    f"[{queue_name}] Forward failed for msgId={sqs_message.get('MessageId')}: "
                    f"{str(e)}",
                    extra={"event": "message_forward_failed", "queue_name": queue_name},
                )
                await self._save_failed_message(message, queue_name, sqs_message)
                continue

            forwarded += 1
            self.logger.info(f"[{queue_name}] Forwarded msgId={sqs_message.get('MessageId')}")

            try:
                await self.sqs_client.delete_message(
                    QueueUrl=queue_config.queue_url,
                    ReceiptHandle=sqs_message["ReceiptHandle"],
                )
            except Exception as e:
                # Redelivery reuses the deduplication id only within the queue's window
                self.logger.error(
                    f"[{queue_name}] Failed to delete forwarded msgId="
                    f"{sqs_message.get('MessageId')}: {str(e)}",
                    exc_info=True,
                )

        self.logger.info(
            "queue_poll_completed",
            extra=self._summary(queue_name, len(messages), forwarded, failed, start),
        )
        return forwarded

    async def _forward(self, message: UnifiedJobMessage) -> None:
        if not self.config.primary_queue_url:
            raise ConfigurationError(
                "Primary queue URL not configured", field="primary_queue_url"
            )

        await self.sqs_client.send_message(
            QueueUrl=self.config.primary_queue_url,
            MessageBody=message.to_json(),
            MessageGroupId=message.metadata.message_group_id,
            MessageDeduplicationId=message.metadata.idempotency_key,
        )

    async def _save_failed_message(
        self, message: UnifiedJobMessage, queue_name: str, sqs_message: Dict[str, Any]
    ) -> None:
        try:
            job = await self.job_service.create_job(
                message.metadata.tenant_id,
                message,
                mode=JobCreationMode.DB,
                validate=False,
            )
        except Exception as e:
            self.logger.error(
                f"[{queue_name}] Failed to save msgId={sqs_message.get('MessageId')} "
                f"to the job store: {str(e)}",
                exc_info=True,
            )
            return

        self.logger.info(
            f"[{queue_name}] Saved msgId={sqs_message.get('MessageId')} as job {job.id}"
        )

    @staticmethod
    def _summary(
        queue_name: str, received: int, forwarded: int, failed: int, start: float
    ) -> Dict[str, Any]:
        return {
            "event": "queue_poll_completed",
            "queue_name": queue_name,
            "messages_received": received,
            "messages_forwarded": forwarded,
            "messages_failed": failed,
            "duration_ms": int((time.monotonic() - start) * 1000),
        }
