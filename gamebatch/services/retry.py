"""
RetryPolicy - bounded retries with linear backoff and cancellation.

Each attempt is raced against the item's own token and the batch token,
so a skip or cancel-all is honoured even if the collaborator never looks
at its token.
"""
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional
import asyncio
import logging

from ..errors import InvariantViolation, OperationCancelled, PermanentItemError
from ..protocols import ILinkConverter, IUploader, UploadProgressCallback
from ..utils.cancellation import CancellationToken
from .link_converter import conversion_budget
from .slots import CANCEL_ALL_REASON, SlotHandle

logger = logging.getLogger(__name__)


class RetryStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED_BATCH = "cancelled_batch"


@dataclass(frozen=True)
class RetryOutcome:
    """Result of a retried operation."""
    status: RetryStatus
    value: Any = None
    attempts: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == RetryStatus.SUCCESS

    @property
    def retry_count(self) -> int:
        return max(0, self.attempts - 1)


@dataclass(frozen=True)
class UploadOutcome:
    """Retried upload plus the optional mirror link."""
    retry: RetryOutcome
    url: Optional[str] = None
    mirror_url: Optional[str] = None
    conversion_cancelled: bool = False

    @property
    def status(self) -> RetryStatus:
        return self.retry.status

    @property
    def final_url(self) -> Optional[str]:
        return self.mirror_url or self.url


class RetryPolicy:
    """
    Wraps one operation with up to max_attempts tries.

    Delay before attempt n+1 is n * base_delay seconds.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def backoff_delay(self, attempt: int) -> float:
        return attempt * self._base_delay

    @staticmethod
    def _cancel_status(
        item_token: Optional[CancellationToken],
        batch_token: Optional[CancellationToken]
    ) -> Optional[RetryStatus]:
        if batch_token is not None and batch_token.is_cancelled:
            return RetryStatus.CANCELLED_BATCH
        if item_token is not None and item_token.is_cancelled:
            if item_token.reason == CANCEL_ALL_REASON:
                return RetryStatus.CANCELLED_BATCH
            return RetryStatus.SKIPPED
        return None

    @staticmethod
    async def _race(awaitable: Awaitable, tokens: List[CancellationToken]):
        """Await awaitable unless one of tokens fires first."""
        task = asyncio.ensure_future(awaitable)
        if not tokens:
            return await task
        waiters = [asyncio.ensure_future(t.wait()) for t in tokens]
        try:
            done, _ = await asyncio.wait({task, *waiters}, return_when=asyncio.FIRST_COMPLETED)
            if task in done:
                return task.result()
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise OperationCancelled("Cancelled during attempt")
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
            if not task.done():
                task.cancel()

    async def _backoff(self, delay: float, tokens: List[CancellationToken]) -> bool:
        """Sleep for delay. Returns True if cancelled meanwhile."""
        try:
            await self._race(self._sleep(delay), tokens)
        except OperationCancelled:
            return True
        return False

    async def execute(
        self,
        operation: Callable[[int], Awaitable[Any]],
        item_token: Optional[CancellationToken] = None,
        batch_token: Optional[CancellationToken] = None,
        label: str = "operation",
    ) -> RetryOutcome:
        """
        Run operation(attempt) until it returns a truthy value.

        Exceptions and empty results count as failed attempts, except
        PermanentItemError (no retry) and InvariantViolation (propagates).
        """
        tokens = [t for t in (item_token, batch_token) if t is not None]
        last_error: Optional[str] = None

        for attempt in range(1, self._max_attempts + 1):
            status = self._cancel_status(item_token, batch_token)
            if status:
                return RetryOutcome(status, attempts=attempt - 1, error=self._reason(status))

            try:
                value = await self._race(operation(attempt), tokens)
            except OperationCancelled:
                status = self._cancel_status(item_token, batch_token) or RetryStatus.SKIPPED
                logger.info(f"{label}: cancelled on attempt {attempt}")
                return RetryOutcome(status, attempts=attempt, error=self._reason(status))
            except PermanentItemError as e:
                logger.error(f"{label}: permanent failure: {e}")
                return RetryOutcome(RetryStatus.FAILED, attempts=attempt, error=str(e))
            except InvariantViolation:
                raise
            except Exception as e:
                last_error = str(e) or type(e).__name__
                logger.warning(f"{label}: attempt {attempt}/{self._max_attempts} failed: {last_error}")
            else:
                if value:
                    if attempt > 1:
                        logger.info(f"{label}: succeeded on attempt {attempt}")
                    return RetryOutcome(RetryStatus.SUCCESS, value=value, attempts=attempt)
                last_error = f"{label} returned no result"
                logger.warning(f"{label}: attempt {attempt}/{self._max_attempts} returned nothing")

            if attempt < self._max_attempts:
                if await self._backoff(self.backoff_delay(attempt), tokens):
                    status = self._cancel_status(item_token, batch_token) or RetryStatus.SKIPPED
                    return RetryOutcome(status, attempts=attempt, error=self._reason(status))

        return RetryOutcome(RetryStatus.FAILED, attempts=self._max_attempts, error=last_error)

    @staticmethod
    def _reason(status: RetryStatus) -> str:
        if status == RetryStatus.CANCELLED_BATCH:
            return CANCEL_ALL_REASON
        return "Skipped by user"

    async def upload(
        self,
        uploader: IUploader,
        path: Path,
        handle: Optional[SlotHandle] = None,
        batch_token: Optional[CancellationToken] = None,
        converter: Optional[ILinkConverter] = None,
        size_hint: int = 0,
        budget: Optional[float] = None,
        progress_callback: Optional[UploadProgressCallback] = None,
        on_attempt: Optional[Callable[[int], None]] = None,
        after_upload: Optional[Callable[[RetryOutcome], Awaitable[None]]] = None,
        convert_token: Optional[CancellationToken] = None,
    ) -> UploadOutcome:
        """
        Upload path with retries, then try to convert the URL.

        after_upload runs once the upload attempts are over and before any
        conversion, so the caller can free its upload slot early. The
        conversion is raced against convert_token (default: a child of
        batch_token); when it fires the original URL is kept and the
        outcome reports conversion_cancelled.
        """
        item_token = handle.token if handle else None

        async def attempt_upload(attempt: int):
            if on_attempt:
                on_attempt(attempt)
            return await uploader.upload(path, progress_callback, item_token)

        outcome = await self.execute(attempt_upload, item_token, batch_token, label=f"upload {path.name}")
        if after_upload is not None:
            await after_upload(outcome)
        if not outcome.success:
            return UploadOutcome(outcome)

        url = outcome.value
        if converter is None:
            return UploadOutcome(outcome, url=url)
        if convert_token is None and batch_token is not None:
            convert_token = CancellationToken(parent=batch_token, reason=CANCEL_ALL_REASON)
        try:
            mirror = await self.convert_link(converter, url, size_hint, budget, convert_token)
        except OperationCancelled:
            logger.info(f"Link conversion for {path.name} cancelled, keeping {url}")
            return UploadOutcome(outcome, url=url, conversion_cancelled=True)
        return UploadOutcome(outcome, url=url, mirror_url=mirror)

    async def convert_link(
        self,
        converter: ILinkConverter,
        url: str,
        size_hint: int = 0,
        budget: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Optional[str]:
        """
        Best-effort conversion. None keeps the original URL.

        Raises OperationCancelled when cancel_token fires first; every
        other failure is logged and yields None.
        """
        budget = budget if budget is not None else conversion_budget(size_hint)
        tokens = [cancel_token] if cancel_token is not None else []
        if cancel_token is not None and cancel_token.is_cancelled:
            raise OperationCancelled(cancel_token.reason)
        try:
            converted = await asyncio.wait_for(
                self._race(converter.convert(url, size_hint, cancel_token), tokens),
                timeout=budget,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Link conversion exceeded {budget:.0f}s, keeping {url}")
            return None
        except (OperationCancelled, InvariantViolation):
            raise
        except Exception as e:
            if cancel_token is not None and cancel_token.is_cancelled:
                raise OperationCancelled(cancel_token.reason) from e
            logger.warning(f"Link conversion failed, keeping {url}: {e}")
            return None
        if not converted or converted == url:
            return None
        return converted
