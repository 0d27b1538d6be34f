from contextlib import contextmanager
import json
import logging
import queue
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from substrateinterface import Keypair, SubstrateInterface
from substrateinterface.exceptions import StorageFunctionNotFound, SubstrateRequestException
from websocket import (
    WebSocketConnectionClosedException,
    WebSocketProtocolException,
    WebSocketTimeoutException,
)

from tfclient.tfchain.chain_data import BlockHash
from tfclient.tfchain.config import SUBSCRIPTION_JOIN_TIMEOUT_SECS
from tfclient.tfchain.errors import (
    ChainError,
    MalformedPayload,
    PreconditionViolated,
    Rejected,
    TransientDisconnect,
)

logger = logging.getLogger(__name__)

DISCONNECT_EXCEPTIONS = (
    WebSocketConnectionClosedException,
    WebSocketProtocolException,
    WebSocketTimeoutException,
    # ConnectionError, TimeoutError, socket.gaierror and unreachable network errors
    OSError,
)

_CLOSED = object()


class HeaderChannel:
    """
    Receiving end of the finalized heads notification feed

    The producer pushes text payloads with ``send``, a failure with ``fail`` and marks the
    end of the feed with ``end``. ``recv`` blocks the caller until one of those arrives.
    Payloads are delivered in the order they were pushed.
    """

    def __init__(self, release: Optional[Callable[[], None]] = None):
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._release = release
        self._closed = threading.Event()
        self._drained = False

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, payload: str) -> None:
        if self._closed.is_set():
            return
        self._queue.put(payload)

    def fail(self, error: ChainError) -> None:
        if self._closed.is_set():
            return
        self._queue.put(error)

    def end(self) -> None:
        """Producer side: no more payloads will follow."""
        self._queue.put(_CLOSED)

    def recv(self) -> Optional[str]:
        """
        Block until the next payload

        Returns None once the feed has ended, raises the error the producer failed with.
        """
        if self._drained:
            return None
        item = self._queue.get()
        if item is _CLOSED:
            self._drained = True
            return None
        if isinstance(item, ChainError):
            raise item
        return item

    def close(self) -> None:
        """Consumer side: release the subscription, pending payloads are dropped."""
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            if self._release is not None:
                self._release()
        finally:
            self._drained = True
            self._queue.put(_CLOSED)


class FinalizedHeadsFeed:
    """
    Reads ``chain_subscribeFinalizedHeads`` notifications on a dedicated connection

    The websocket read blocks, so it runs on its own daemon thread and pushes every header
    as JSON text into the channel.
    """

    def __init__(self, interface: SubstrateInterface, channel: Optional[HeaderChannel] = None):
        self.interface = interface
        self.channel = channel or HeaderChannel(release=self.stop)
        self.subscription_id: Optional[str] = None
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name="tfchain-finalized-heads", daemon=True)

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def start(self) -> HeaderChannel:
        self._thread.start()
        return self.channel

    def _on_message(self, message: Dict[str, Any], update_nr: int, subscription_id: str):
        self.subscription_id = subscription_id
        if self._stopped.is_set():
            # a non None return value ends the rpc_request loop
            return subscription_id
        self.channel.send(json.dumps(message["params"]["result"]))
        return None

    def _run(self) -> None:
        try:
            self.interface.rpc_request("chain_subscribeFinalizedHeads", [], result_handler=self._on_message)
        except SubstrateRequestException as e:
            logger.error("Finalized heads subscription rejected: {}".format(e))
            self.channel.fail(Rejected(e))
        except Exception as e:
            # closing the socket from stop() surfaces here as well
            if not self._stopped.is_set():
                logger.warning("Finalized heads subscription dropped: {}".format(e))
                self.channel.fail(TransientDisconnect("finalized heads subscription dropped: {}".format(e)))
        finally:
            self.channel.end()
            logger.debug("Finalized heads producer exited")

    def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        logger.info("Closing finalized heads subscription {}".format(self.subscription_id))
        try:
            # shutdown skips the close handshake so the blocked reader wakes up at once
            if self.interface.websocket is not None:
                self.interface.websocket.shutdown()
        except Exception as e:
            logger.debug("Error closing subscription connection: {}".format(e))
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(SUBSCRIPTION_JOIN_TIMEOUT_SECS)


class ChainBackend:
    """
    Raw calls against a TFChain node through substrateinterface

    Every call translates third party exceptions into ChainError kinds so the retry
    wrapper can tell transient disconnects from everything else. Calls are not retried here.
    """

    def __init__(self, url: str, keypair: Optional[Keypair] = None, ws_options: Optional[dict] = None):
        self.url = url
        self.keypair = keypair
        # substrateinterface tracks request ids and pending messages per connection
        self._lock = threading.RLock()
        self._feeds: List[FinalizedHeadsFeed] = []
        self._interface_kwargs: Dict[str, Any] = {"url": url}
        if ws_options is not None:
            self._interface_kwargs["ws_options"] = ws_options
        with self._classify_errors("connect"):
            self.interface: SubstrateInterface = SubstrateInterface(**self._interface_kwargs)

    @contextmanager
    def _classify_errors(self, operation: str) -> Iterator[None]:
        try:
            with self._lock:
                yield
        except ChainError:
            raise
        except DISCONNECT_EXCEPTIONS as e:
            raise TransientDisconnect("{} failed, connection lost: {}".format(operation, e)) from e
        except SubstrateRequestException as e:
            raise Rejected(e, details={"operation": operation}) from e
        except StorageFunctionNotFound as e:
            # a ValueError subclass, but the runtime simply has no such pallet or item
            raise Rejected(e, details={"operation": operation}) from e
        except (ValueError, TypeError, KeyError) as e:
            raise MalformedPayload("{} returned an undecodable value: {}".format(operation, e)) from e

    def _ensure_connected(self) -> None:
        # a dropped socket is replaced before the next attempt
        if not self.interface.websocket or not self.interface.websocket.connected:
            logger.info("Reconnecting to {}".format(self.url))
            self.interface.connect_websocket()

    def submit_extrinsic(
        self,
        call_module: str,
        call_function: str,
        call_params: Dict[str, Any],
        wait_for_inclusion: bool = False,
    ) -> Optional[str]:
        """
        Compose, sign and submit an extrinsic

        :returns: the block hash when waiting for inclusion, the extrinsic hash otherwise
        """
        if self.keypair is None:
            raise PreconditionViolated("{}.{} requires a signer".format(call_module, call_function))

        with self._classify_errors("{}.{}".format(call_module, call_function)):
            self._ensure_connected()
            call = self.interface.compose_call(
                call_module=call_module,
                call_function=call_function,
                call_params=call_params,
            )
            extrinsic = self.interface.create_signed_extrinsic(call=call, keypair=self.keypair)
            receipt = self.interface.submit_extrinsic(extrinsic, wait_for_inclusion=wait_for_inclusion)

            if not wait_for_inclusion:
                return receipt.extrinsic_hash

            if not receipt.is_success:
                logger.error(f"⚠️ Extrinsic Failed: {receipt.error_message}")
                raise Rejected(receipt.error_message, details={"extrinsic_hash": receipt.extrinsic_hash})

            return receipt.block_hash

    def read_storage_map(
        self,
        pallet: str,
        item: str,
        key: Union[Any, List[Any]],
        block: Optional[BlockHash] = None,
    ) -> Optional[Any]:
        params = key if isinstance(key, list) else [key]
        with self._classify_errors("{}.{}".format(pallet, item)):
            self._ensure_connected()
            result = self.interface.query(pallet, item, params, block_hash=_block_hash_str(block))
            return None if result is None else result.value

    def read_storage_value(self, pallet: str, item: str, block: Optional[BlockHash] = None) -> Optional[Any]:
        with self._classify_errors("{}.{}".format(pallet, item)):
            self._ensure_connected()
            result = self.interface.query(pallet, item, block_hash=_block_hash_str(block))
            return None if result is None else result.value

    def block_hash_at_height(self, height: int) -> Optional[BlockHash]:
        with self._classify_errors("chain_getBlockHash"):
            self._ensure_connected()
            block_hash = self.interface.get_block_hash(block_id=height)
        if block_hash is None:
            return None
        return BlockHash.from_hex(block_hash)

    def block_by_hash(self, block_hash: BlockHash) -> Optional[Dict[str, Any]]:
        with self._classify_errors("chain_getBlock"):
            self._ensure_connected()
            return self.interface.get_block(block_hash=str(block_hash))

    def block_events(self, block: Optional[BlockHash] = None) -> List[Dict[str, Any]]:
        with self._classify_errors("System.Events"):
            self._ensure_connected()
            events = self.interface.get_events(block_hash=_block_hash_str(block))
            return [event.value for event in events]

    def subscribe_finalized_headers(self) -> HeaderChannel:
        with self._classify_errors("chain_subscribeFinalizedHeads"):
            interface = SubstrateInterface(**self._interface_kwargs, auto_reconnect=False)
        feed = FinalizedHeadsFeed(interface)
        with self._lock:
            self._feeds = [f for f in self._feeds if not f.stopped]
            self._feeds.append(feed)
        logger.info("Subscribed to finalized heads on {}".format(self.url))
        return feed.start()

    def close(self) -> None:
        """Close the request connection and stop every subscription opened through this backend."""
        with self._lock:
            feeds, self._feeds = self._feeds, []
        for feed in feeds:
            feed.stop()
        self.interface.close()


def _block_hash_str(block: Optional[BlockHash]) -> Optional[str]:
    return None if block is None else str(block)
