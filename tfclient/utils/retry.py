import logging
from typing import Callable, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_none

from tfclient.tfchain.config import MAX_ATTEMPTS
from tfclient.tfchain.errors import TransientDisconnect

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
    fn = retry_state.fn
    name = getattr(getattr(fn, "func", fn), "__qualname__", repr(fn))
    logger.warning(
        "Transient disconnect on attempt {}/{} of {}: {}".format(
            retry_state.attempt_number,
            retry_state.retry_object.stop.max_attempt_number,
            name,
            exc,
        )
    )


def retry_transient(operation: Callable[[], T], max_attempts: int = MAX_ATTEMPTS) -> T:
    """
    Run ``operation`` and issue it again, without delay, while it raises TransientDisconnect

    The last attempt's value or exception is returned or raised unchanged. Any other
    exception is raised after a single invocation.

    Callers must only pass operations that are safe to repeat. Extrinsic submission is
    not: a disconnect after the node accepted the extrinsic can submit it twice.

    :param operation: zero-argument callable performing one remote call
    :param max_attempts: total attempts, including the first one
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1, got {}".format(max_attempts))

    retrying = Retrying(
        retry=retry_if_exception_type(TransientDisconnect),
        stop=stop_after_attempt(max_attempts),
        wait=wait_none(),
        before_sleep=_log_retry,
        reraise=True,
    )
    return retrying(operation)
