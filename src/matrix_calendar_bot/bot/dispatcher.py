"""Reply delivery with bounded retry.

Transient transport failures (network errors, rate limits, 5xx) are retried
with exponential backoff until `max_attempts` is reached. A rate-limit
response stretches the delay to the homeserver's `retry_after_ms`. Permanent
failures are returned immediately. Credential rejection is never caught here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from matrix_calendar_bot.matrix.transport import MatrixTransport, TransportFailure
from matrix_calendar_bot.models.command import ReplyMessage

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    """Outcome of one send."""

    delivered: bool
    attempts: int
    event_id: str | None = None
    error: str | None = None


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TransportFailure) and exc.transient


class wait_retry_after:
    """Exponential backoff that never undercuts a server-requested delay.

    A rate-limited send carries `retry_after_ms`; the next attempt waits at
    least that long. The result is capped at `maximum`.
    """

    def __init__(self, initial: float, maximum: float):
        self.maximum = maximum
        self._backoff = wait_exponential(multiplier=initial, max=maximum)

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self._backoff(retry_state)
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        retry_after_ms = getattr(exc, "retry_after_ms", None)
        if retry_after_ms:
            delay = max(delay, retry_after_ms / 1000)
        return min(delay, self.maximum)


class ReplyDispatcher:
    """Sends replies through the Matrix transport.

    Example:
        ```python
        dispatcher = ReplyDispatcher(transport, max_attempts=5)
        result = await dispatcher.send(ReplyMessage(room_id, "hello"))
        if not result.delivered:
            logger.error(result.error)
        ```
    """

    def __init__(
        self,
        transport: MatrixTransport,
        max_attempts: int = 5,
        backoff_initial: float = 1.0,
        backoff_max: float = 30.0,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.transport = transport
        self.max_attempts = max_attempts
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_retry_after(self.backoff_initial, self.backoff_max),
            retry=retry_if_exception(_is_transient),
            before_sleep=self._log_retry,
        )

    @staticmethod
    def _log_retry(retry_state) -> None:
        exc = retry_state.outcome.exception()
        logger.warning(
            f"Send attempt {retry_state.attempt_number} failed ({exc}), retrying"
        )

    async def send(self, reply: ReplyMessage) -> DeliveryResult:
        """Deliver a reply.

        Returns:
            DeliveryResult; ``delivered`` is False after a permanent failure
            or when attempts are exhausted

        Raises:
            CredentialsInvalidError: If the homeserver rejects the bot's token
        """
        attempts = 0
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    event_id = await self.transport.send_message(
                        reply.room_id, reply.body, reply.html
                    )
        except RetryError as e:
            last = e.last_attempt.exception()
            return DeliveryResult(delivered=False, attempts=attempts, error=str(last))
        except TransportFailure as e:
            return DeliveryResult(delivered=False, attempts=attempts, error=str(e))

        logger.debug(f"Delivered reply to {reply.room_id} as {event_id}")
        return DeliveryResult(delivered=True, attempts=attempts, event_id=event_id)
