import logging
import threading
from typing import Iterator, Optional

from tfclient.tfchain.backend import HeaderChannel
from tfclient.tfchain.chain_data import Header

logger = logging.getLogger(__name__)


class FinalizedHeadSubscription:
    """
    Blocking iterator over finalized block headers

    Wraps the receiving end of a finalized heads subscription. Each call to ``next_header``
    waits for the node to push the next finalized header and decodes it.

    A payload that fails to decode raises MalformedPayload for that call only, the next call
    reads the following header. Once the subscription has ended ``next_header`` returns None
    and iteration stops. The subscription can't be resumed, open a new one instead.

    Use it as a context manager so the subscription is released on every exit path:

        with tfchain.finalized_block_headers() as headers:
            for header in headers:
                ...
    """

    def __init__(self, channel: HeaderChannel):
        self._channel = channel
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._channel.closed

    def next_header(self) -> Optional[Header]:
        # one receiver, concurrent consumers are served one at a time
        with self._lock:
            payload = self._channel.recv()
            if payload is None:
                return None
            return Header.from_json(payload)

    def __iter__(self) -> Iterator[Header]:
        return self

    def __next__(self) -> Header:
        header = self.next_header()
        if header is None:
            raise StopIteration
        return header

    def close(self) -> None:
        if not self._channel.closed:
            logger.debug("Releasing finalized heads subscription")
        self._channel.close()

    def __enter__(self) -> "FinalizedHeadSubscription":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()
