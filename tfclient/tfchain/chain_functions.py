from enum import Enum
from functools import partial
import logging
from typing import Any, Callable, List, Optional, TypeVar, Union

from substrateinterface import Keypair, KeypairType

from tfclient.tfchain.backend import ChainBackend
from tfclient.tfchain.chain_data import (
    AccountData,
    Block,
    BlockHash,
    ChainEvent,
    Contract,
    Farm,
    Node,
    Twin,
    account_to_ss58,
)
from tfclient.tfchain.config import (
    BLOCK_TIME_SECONDS,
    DEFAULT_RPC,
    MAX_ATTEMPTS,
    MAX_HEIGHT_SEARCH_ITERATIONS,
)
from tfclient.tfchain.errors import DidNotConverge, PreconditionViolated
from tfclient.tfchain.finalized_heads import FinalizedHeadSubscription
from tfclient.utils.retry import retry_transient

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()],
)
logger = logging.getLogger(__name__)

T = TypeVar("T")

BlockArg = Optional[Union[BlockHash, str]]


class KeypairFrom(Enum):
    MNEMONIC = 1
    SEED = 2
    URI = 3


def keypair_from_phrase(
    phrase: str,
    keypair_from: Optional[KeypairFrom] = None,
    crypto_type: int = KeypairType.SR25519,
) -> Keypair:
    if keypair_from is None or keypair_from is KeypairFrom.MNEMONIC:
        return Keypair.create_from_mnemonic(phrase, crypto_type=crypto_type)
    elif keypair_from is KeypairFrom.SEED:
        return Keypair.create_from_seed(phrase, crypto_type=crypto_type)
    elif keypair_from is KeypairFrom.URI:
        return Keypair.create_from_uri(phrase, crypto_type=crypto_type)
    raise ValueError("Unknown keypair source {}".format(keypair_from))


def _trunc_div(numerator: int, denominator: int) -> int:
    """Integer division rounding toward zero, unlike ``//``."""
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def _as_block_hash(block: BlockArg) -> Optional[BlockHash]:
    if block is None or isinstance(block, BlockHash):
        return block
    return BlockHash.from_hex(block)


class TFChain:
    """
    Client for a TFChain node

    Every remote call goes through ``retry_transient``, so dropped connections are retried
    up to ``max_attempts`` times in total. Other failures reach the caller as ChainError.

    :param url: websocket endpoint of the node
    :param phrase: signer secret, omit for a read only client
    :param keypair_from: how ``phrase`` is interpreted, defaults to a mnemonic
    :param max_attempts: total attempts per remote call
    :param backend: chain backend to use instead of connecting to ``url``
    """

    def __init__(
        self,
        url: str = DEFAULT_RPC,
        phrase: Optional[str] = None,
        keypair_from: Optional[KeypairFrom] = None,
        max_attempts: int = MAX_ATTEMPTS,
        max_search_iterations: int = MAX_HEIGHT_SEARCH_ITERATIONS,
        backend: Optional[Any] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.url = url
        self.max_attempts = max_attempts
        self.max_search_iterations = max_search_iterations
        self.keypair: Optional[Keypair] = None
        if phrase is not None:
            self.keypair = keypair_from_phrase(phrase, keypair_from)
        if backend is None:
            backend = retry_transient(partial(ChainBackend, url, self.keypair), max_attempts)
        self.backend = backend

    @property
    def address(self) -> Optional[str]:
        return None if self.keypair is None else self.keypair.ss58_address

    def _call(self, fn: Callable[..., T], *args: Any) -> T:
        return retry_transient(partial(fn, *args), self.max_attempts)

    def close(self) -> None:
        self.backend.close()

    def __enter__(self) -> "TFChain":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    """
  Extrinsics
  """

    def create_twin(self, ip: str) -> Optional[str]:
        """
        Create a twin for the signer, returns once the extrinsic is in the pool

        Note: a disconnect after the node accepted the extrinsic is retried like any other,
              which can submit the extrinsic twice. The second one fails on chain since the
              account already owns a twin.

        :param ip: Yggdrasil IP of the twin
        :returns: extrinsic hash
        """
        return self._call(self.backend.submit_extrinsic, "TfgridModule", "create_twin", {"ip": ip}, False)

    def create_farm(self, name: str, public_ips: Optional[List[Any]] = None) -> Optional[str]:
        """
        Create a farm owned by the signer's twin and wait for it to be included in a block

        Note: the same double submission caveat as ``create_twin`` applies.

        :param name: farm name, unique on chain
        :param public_ips: public IPs to attach, omitted from the call when None
        :returns: hash of the block including the extrinsic
        """
        call_params = {"name": name}
        if public_ips is not None:
            call_params["public_ips"] = public_ips
        return self._call(self.backend.submit_extrinsic, "TfgridModule", "create_farm", call_params, True)

    """
  Queries
  """

    def get_twin_by_id(self, twin_id: int) -> Optional[Twin]:
        result = self._call(self.backend.read_storage_map, "TfgridModule", "Twins", twin_id, None)
        if result is None:
            return None
        return Twin.fix_decoded_values(result)

    def get_farm_by_id(self, farm_id: int, block: BlockArg = None) -> Optional[Farm]:
        result = self._call(self.backend.read_storage_map, "TfgridModule", "Farms", farm_id, _as_block_hash(block))
        if result is None:
            return None
        return Farm.fix_decoded_values(result)

    def get_farm_id_by_name(self, name: str) -> Optional[int]:
        """
        Query a farm ID by its name

        :returns: the farm ID, None if no farm has that name
        """
        result = self._call(self.backend.read_storage_map, "TfgridModule", "FarmIdByName", name, None)
        # farm IDs start at 1, the storage default is 0
        if not result:
            return None
        return int(result)

    def farm_count(self, block: BlockArg = None) -> int:
        """Highest farm ID assigned so far."""
        result = self._call(self.backend.read_storage_value, "TfgridModule", "FarmID", _as_block_hash(block))
        return int(result or 0)

    def get_account_free_balance(self, account: str) -> AccountData:
        """
        Query the balances of an account

        :param account: SS58 address or 0x prefixed public key
        :returns: account balances, all zero for an account the chain never saw
        """
        address = account_to_ss58(account)
        result = self._call(self.backend.read_storage_map, "System", "Account", address, None)
        if result is None:
            return AccountData._get_null()
        return AccountData.fix_decoded_values(result)

    def get_node_by_id(self, node_id: int, block: BlockArg = None) -> Optional[Node]:
        result = self._call(self.backend.read_storage_map, "TfgridModule", "Nodes", node_id, _as_block_hash(block))
        if result is None:
            return None
        return Node.fix_decoded_values(result)

    def node_count(self, block: BlockArg = None) -> int:
        """Highest node ID assigned so far."""
        result = self._call(self.backend.read_storage_value, "TfgridModule", "NodeID", _as_block_hash(block))
        return int(result or 0)

    def get_contract_by_id(self, contract_id: int, block: BlockArg = None) -> Optional[Contract]:
        result = self._call(
            self.backend.read_storage_map, "SmartContractModule", "Contracts", contract_id, _as_block_hash(block)
        )
        if result is None:
            return None
        return Contract.fix_decoded_values(result)

    def contract_count(self, block: BlockArg = None) -> int:
        """Highest contract ID assigned so far."""
        result = self._call(
            self.backend.read_storage_value, "SmartContractModule", "ContractID", _as_block_hash(block)
        )
        return int(result or 0)

    def get_farm_payout_address(self, farm_id: int, block: BlockArg = None) -> Optional[str]:
        result = self._call(
            self.backend.read_storage_map,
            "TfgridModule",
            "FarmPayoutV2AddressByFarmID",
            farm_id,
            _as_block_hash(block),
        )
        if result is None:
            return None
        return str(result)

    """
  Blocks
  """

    def get_block_by_hash(self, block_hash: str) -> Optional[Block]:
        """
        Fetch a block by its hash

        :param block_hash: 0x prefixed hex hash, MalformedPayload is raised for anything else
        """
        parsed = BlockHash.from_hex(block_hash)
        result = self._call(self.backend.block_by_hash, parsed)
        if result is None:
            return None
        return Block.fix_decoded_values(result)

    def get_block_events(self, block: BlockArg = None) -> List[ChainEvent]:
        records = self._call(self.backend.block_events, _as_block_hash(block))
        return ChainEvent.list_from_records(records or [])

    def block_timestamp(self, block: BlockArg = None) -> int:
        """
        Timestamp of a block in milliseconds, the latest block when ``block`` is None
        """
        block_hash = _as_block_hash(block)
        result = self._call(self.backend.read_storage_value, "Timestamp", "Now", block_hash)
        if result is None:
            raise PreconditionViolated(
                "Timestamp.Now is not set at block {}".format(block_hash or "latest"),
                details={"block": str(block_hash) if block_hash else None},
            )
        return int(result)

    def get_hash_at_height(self, height: int) -> Optional[BlockHash]:
        return self._call(self.backend.block_hash_at_height, height)

    def finalized_block_headers(self) -> FinalizedHeadSubscription:
        """
        Subscribe to finalized block headers

        The subscription is released when the returned object is closed, use it as a
        context manager.
        """
        channel = self._call(self.backend.subscribe_finalized_headers)
        return FinalizedHeadSubscription(channel)

    """
  Helpers
  """

    def height_at_timestamp(self, ts: int) -> int:
        """
        Get the height just past a timestamp, i.e. ``block_x_time <= ts < block_x+1_time`` returns x + 1

        Block times are roughly constant, so the distance to the target in blocks is
        extrapolated from the time difference and the search jumps there. An estimate past
        the chain tip is halved back toward the last height that existed. Once the estimate is
        within one block time of the target, neighbouring blocks are checked so irregular
        block times can't leave the answer off by one.

        :param ts: unix timestamp in seconds, must not be past the latest block
        :returns: block height
        """
        # timestamps are stored in milliseconds
        latest_ts = self.block_timestamp(None) // 1000
        if latest_ts < ts:
            raise PreconditionViolated(
                "can't fetch block for future timestamp {} vs latest {}".format(ts, latest_ts),
                details={"timestamp": ts, "latest": latest_ts},
            )

        lookups = 0

        def block_time_at(height: int) -> Optional[int]:
            nonlocal lookups
            lookups += 1
            if lookups > self.max_search_iterations:
                raise DidNotConverge(
                    "no height found for timestamp {} after {} lookups".format(ts, self.max_search_iterations),
                    details={"timestamp": ts, "height": height},
                )
            block_hash = self.get_hash_at_height(height)
            if block_hash is None:
                return None
            return self.block_timestamp(block_hash) // 1000

        height = 1
        last_height = 1
        while True:
            block_time = block_time_at(height)
            if block_time is None:
                # In case the network stalled the estimate can be past the tip. Keep last_height
                # so repeated misses approach it.
                height = (height + last_height) // 2
                continue

            time_delta = ts - block_time
            block_delta = _trunc_div(time_delta, BLOCK_TIME_SECONDS)
            logger.debug(
                "height={} block_time={} time_delta={} block_delta={}".format(
                    height, block_time, time_delta, block_delta
                )
            )
            if block_delta == 0:
                break

            next_height = height + block_delta
            if next_height < 1:
                # genesis has no timestamp, ts before block 1 resolves to 1 and a prediction
                # of height 0 is settled by walking back from here
                if height == 1 or next_height == 0:
                    break
                raise PreconditionViolated(
                    "negative height search (height {} delta {})".format(height, block_delta),
                    details={"height": height, "block_delta": block_delta},
                )

            last_height = height
            height = next_height

        if time_delta >= 0:
            # ts is at or past this block, the answer is the first later block past ts
            while True:
                next_time = block_time_at(height + 1)
                if next_time is None or next_time > ts:
                    return height + 1
                height += 1

        # ts is before this block, step back while the previous block is still past ts
        while height > 1:
            previous_time = block_time_at(height - 1)
            if previous_time is None or previous_time <= ts:
                break
            height -= 1
        return height
