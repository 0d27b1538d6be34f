from collections import Counter, defaultdict
import hashlib
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from tfclient.tfchain.backend import HeaderChannel
from tfclient.tfchain.chain_data import BlockHash
from tfclient.tfchain.config import BLOCK_TIME_SECONDS
from tfclient.tfchain.errors import ChainError, PreconditionViolated, TransientDisconnect

logger = logging.getLogger("local-tfchain")

ZERO_HASH = BlockHash(bytes(32))


def _hash_for(height: int) -> BlockHash:
    return BlockHash(hashlib.blake2b(height.to_bytes(8, "little"), digest_size=32).digest())


def header_dict(height: int) -> Dict[str, Any]:
    """Header as the node pushes it over the finalized heads subscription."""
    parent = ZERO_HASH if height == 0 else _hash_for(height - 1)
    return {
        "parentHash": str(parent),
        "number": hex(height),
        "stateRoot": str(_hash_for(height + 1_000_000)),
        "extrinsicsRoot": str(_hash_for(height + 2_000_000)),
        "digest": {"logs": []},
    }


class LocalMockChainBackend:
    """
    In-memory stand-in for ChainBackend

    Holds a chain of blocks with timestamps, a flat storage and any number of finalized
    heads subscriptions fed by ``publish_header``. Failures can be scripted per method with
    ``fail_next`` to exercise the retry behaviour without a node.
    """

    def __init__(self, signed: bool = True):
        self.signed = signed
        # index is the height, genesis at 0 has no timestamp
        self.blocks: List[Tuple[BlockHash, Optional[int]]] = [(_hash_for(0), None)]
        self.storage_values: Dict[Tuple[str, str], Any] = {}
        self.storage_maps: Dict[Tuple[str, str], Dict[Any, Any]] = defaultdict(dict)
        self.events: Dict[BlockHash, List[Dict[str, Any]]] = {}
        self.extrinsics: List[Dict[str, Any]] = []
        self.channels: List[HeaderChannel] = []
        self.calls: Counter = Counter()
        self.requested_heights: List[int] = []
        self._failures: Dict[str, List[ChainError]] = defaultdict(list)
        self.closed = False

    """
  Chain setup
  """

    @property
    def height(self) -> int:
        return len(self.blocks) - 1

    def add_block(self, timestamp_ms: int) -> BlockHash:
        height = len(self.blocks)
        block_hash = _hash_for(height)
        self.blocks.append((block_hash, timestamp_ms))
        return block_hash

    def add_blocks(self, start_ms: int, intervals_secs: List[int]) -> None:
        """Add a first block at ``start_ms`` and one more block per interval."""
        timestamp = start_ms
        self.add_block(timestamp)
        for interval in intervals_secs:
            timestamp += interval * 1000
            self.add_block(timestamp)

    def add_regular_blocks(self, start_ms: int, count: int, block_secs: int = BLOCK_TIME_SECONDS) -> None:
        self.add_blocks(start_ms, [block_secs] * (count - 1))

    def set_storage_value(self, pallet: str, item: str, value: Any) -> None:
        self.storage_values[(pallet, item)] = value

    def set_storage_map(self, pallet: str, item: str, key: Any, value: Any) -> None:
        self.storage_maps[(pallet, item)][key] = value

    def set_events(self, block_hash: BlockHash, events: List[Dict[str, Any]]) -> None:
        self.events[block_hash] = events

    def fail_next(self, method: str, times: int = 1, error: Optional[Callable[[], ChainError]] = None) -> None:
        """Make the next ``times`` calls of ``method`` raise, TransientDisconnect by default."""
        factory = error or (lambda: TransientDisconnect("mock connection dropped"))
        self._failures[method].extend(factory() for _ in range(times))

    def _enter(self, method: str) -> None:
        self.calls[method] += 1
        if self._failures[method]:
            raise self._failures[method].pop(0)

    def _height_of(self, block_hash: BlockHash) -> Optional[int]:
        for height, (known_hash, _) in enumerate(self.blocks):
            if known_hash == block_hash:
                return height
        return None

    """
  Backend contract
  """

    def submit_extrinsic(
        self,
        call_module: str,
        call_function: str,
        call_params: Dict[str, Any],
        wait_for_inclusion: bool = False,
    ) -> Optional[str]:
        self._enter("submit_extrinsic")
        if not self.signed:
            raise PreconditionViolated("{}.{} requires a signer".format(call_module, call_function))
        self.extrinsics.append(
            {"call_module": call_module, "call_function": call_function, "call_params": call_params}
        )
        extrinsic_hash = _hash_for(10_000_000 + len(self.extrinsics))
        logger.info("Submitted {}.{} as {}".format(call_module, call_function, extrinsic_hash))
        if wait_for_inclusion:
            return str(self.blocks[-1][0])
        return str(extrinsic_hash)

    def read_storage_map(self, pallet: str, item: str, key: Any, block: Optional[BlockHash] = None) -> Optional[Any]:
        self._enter("read_storage_map")
        return self.storage_maps.get((pallet, item), {}).get(key)

    def read_storage_value(self, pallet: str, item: str, block: Optional[BlockHash] = None) -> Optional[Any]:
        self._enter("read_storage_value")
        if (pallet, item) == ("Timestamp", "Now"):
            if block is None:
                return self.blocks[-1][1]
            height = self._height_of(block)
            return None if height is None else self.blocks[height][1]
        return self.storage_values.get((pallet, item))

    def block_hash_at_height(self, height: int) -> Optional[BlockHash]:
        self._enter("block_hash_at_height")
        self.requested_heights.append(height)
        if height < 0 or height >= len(self.blocks):
            return None
        return self.blocks[height][0]

    def block_by_hash(self, block_hash: BlockHash) -> Optional[Dict[str, Any]]:
        self._enter("block_by_hash")
        height = self._height_of(block_hash)
        if height is None:
            return None
        header = header_dict(height)
        header["number"] = height
        return {"header": header, "extrinsics": []}

    def block_events(self, block: Optional[BlockHash] = None) -> List[Dict[str, Any]]:
        self._enter("block_events")
        if block is None:
            block = self.blocks[-1][0]
        return list(self.events.get(block, []))

    def subscribe_finalized_headers(self) -> HeaderChannel:
        self._enter("subscribe_finalized_headers")
        channel = HeaderChannel()
        self.channels.append(channel)
        return channel

    def close(self) -> None:
        self.closed = True
        self.end_subscriptions()

    """
  Subscription feed
  """

    def publish_header(self, payload: Union[str, int, Dict[str, Any]]) -> None:
        """
        Push a header to every open subscription

        An int publishes a well formed header at that height, a dict is sent as JSON and a
        string is sent as is, which allows pushing malformed payloads.
        """
        if isinstance(payload, int):
            payload = header_dict(payload)
        if isinstance(payload, dict):
            payload = json.dumps(payload)
        for channel in self.channels:
            channel.send(payload)

    def drop_subscriptions(self, reason: str = "mock subscription dropped") -> None:
        for channel in self.channels:
            channel.fail(TransientDisconnect(reason))
            channel.end()

    def end_subscriptions(self) -> None:
        for channel in self.channels:
            channel.end()
