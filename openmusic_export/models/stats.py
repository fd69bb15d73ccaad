"""Consumer statistics model.

Tracks job outcomes of a consumer process, reported on shutdown.

Author: OpenMusic
Created: 2025-11-02
Version: 1.0.0
"""

from pydantic import BaseModel, Field


class ConsumerStats(BaseModel):
    """Consumer outcome counters.

    Attributes:
        sent_count: Jobs whose export email was delivered and acknowledged.
        retried_count: Jobs re-published for a later attempt.
        dead_lettered_count: Jobs rejected without requeue.
        abandoned_count: Jobs left unacknowledged for redelivery.
        reconnect_count: Broker connect cycles after the first one.
    """

    sent_count: int = Field(default=0, ge=0, description="Delivered exports")
    retried_count: int = Field(default=0, ge=0, description="Re-published jobs")
    dead_lettered_count: int = Field(default=0, ge=0, description="Dead-lettered jobs")
    abandoned_count: int = Field(default=0, ge=0, description="Unacknowledged jobs")
    reconnect_count: int = Field(default=0, ge=0, description="Broker reconnects")

    @property
    def success_rate(self) -> float:
        """Percentage of finished jobs that were delivered."""
        finished = self.sent_count + self.dead_lettered_count
        if not finished:
            return 0.0
        return self.sent_count / finished * 100
