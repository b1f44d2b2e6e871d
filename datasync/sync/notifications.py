import json
import logging
from typing import Optional

from redis.exceptions import RedisError


class CompletionPublisher:
    """Publishes a completion event on Redis pub/sub after each successful sync"""

    def __init__(self, redis_client, channel: str = "etl:completed"):
        self.redis = redis_client
        self.channel = channel
        self.logger = logging.getLogger(__name__)

    async def publish(self, dataset_id: str, job_id: Optional[str], rows_processed: int,
                      duration: float) -> bool:
        message = json.dumps({
            "datasetId": dataset_id,
            "jobId": job_id,
            "rowsProcessed": rows_processed,
            "duration": round(duration, 3),
        })
        try:
            await self.redis.publish(self.channel, message)
            return True
        except RedisError as e:
            self.logger.warning(f"Could not publish completion of job {job_id}: {e}")
            return False
