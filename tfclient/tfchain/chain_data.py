from dataclasses import dataclass, field
import json
from typing import Any, Dict, List, Optional, Union

from scalecodec.utils.ss58 import is_valid_ss58_address, ss58_encode

from tfclient.tfchain.errors import MalformedPayload

HASH_LENGTH = 32

# Generic Substrate prefix, TFChain addresses use it as well
SS58_FORMAT = 42


def _strip_hex_prefix(value: str) -> str:
    if value[:2] in ("0x", "0X"):
        return value[2:]
    return value


def _decode_fixed_hex(value: Any, what: str) -> bytes:
    if not isinstance(value, str) or not value.startswith(("0x", "0X")):
        raise MalformedPayload("{} must be a 0x prefixed hex string, got {!r}".format(what, value), payload=value)
    digits = _strip_hex_prefix(value)
    if len(digits) != HASH_LENGTH * 2:
        raise MalformedPayload(
            "{} must have {} hex digits, got {}".format(what, HASH_LENGTH * 2, len(digits)), payload=value
        )
    try:
        return bytes.fromhex(digits)
    except ValueError as e:
        raise MalformedPayload("invalid hex in {} {!r}".format(what, value), payload=value) from e


def _hex_to_int(value: Union[int, str]) -> int:
    """Header numbers arrive as ``0x`` hex strings over the wire and as ints once decoded."""
    if isinstance(value, bool):
        raise MalformedPayload("expected a block number, got {!r}".format(value), payload=value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            if value[:2] in ("0x", "0X"):
                return int(value, 16)
            return int(value)
        except ValueError as e:
            raise MalformedPayload("invalid block number {!r}".format(value), payload=value) from e
    raise MalformedPayload("expected a block number, got {!r}".format(value), payload=value)


def _bytes_to_str(value: Any) -> str:
    """Vec<u8> storage fields decode either to text or to a ``0x`` hex string."""
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, list) and all(isinstance(i, int) for i in value):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, str) and value.startswith("0x"):
        try:
            return bytes.fromhex(value[2:]).decode("utf-8")
        except ValueError:
            return value
    return str(value)


def _require_mapping(value: Any, type_name: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise MalformedPayload("{} must decode from a mapping, got {!r}".format(type_name, value), payload=value)
    return value


def account_to_ss58(account: str) -> str:
    """
    Normalize an account to its SS58 address

    Accepts an SS58 address or a ``0x`` prefixed 32 byte public key.
    """
    if isinstance(account, str) and account.startswith("0x"):
        return ss58_encode(_decode_fixed_hex(account, "account public key"), ss58_format=SS58_FORMAT)
    if isinstance(account, str) and is_valid_ss58_address(account):
        return account
    raise MalformedPayload("invalid account {!r}".format(account), payload=account)


@dataclass(frozen=True)
class BlockHash:
    """
    A 32 byte block hash
    """

    raw: bytes

    def __post_init__(self):
        if len(self.raw) != HASH_LENGTH:
            raise MalformedPayload(
                "block hash must be {} bytes, got {}".format(HASH_LENGTH, len(self.raw)), payload=self.raw
            )

    @classmethod
    def from_hex(cls, value: str) -> "BlockHash":
        """Parse a ``0x`` prefixed hex string, raising MalformedPayload on anything else."""
        return cls(_decode_fixed_hex(value, "block hash"))

    @property
    def hex(self) -> str:
        return "0x" + self.raw.hex()

    def __str__(self) -> str:
        return self.hex


@dataclass
class Header:
    """
    Dataclass for a block header.
    """

    parent_hash: BlockHash
    number: int
    state_root: BlockHash
    extrinsics_root: BlockHash
    digest_logs: List[Any] = field(default_factory=list)

    @classmethod
    def fix_decoded_values(cls, data_decoded: Any) -> "Header":
        data_decoded = _require_mapping(data_decoded, "Header")
        try:
            digest = data_decoded.get("digest") or {}
            return cls(
                parent_hash=BlockHash.from_hex(data_decoded["parentHash"]),
                number=_hex_to_int(data_decoded["number"]),
                state_root=BlockHash.from_hex(data_decoded["stateRoot"]),
                extrinsics_root=BlockHash.from_hex(data_decoded["extrinsicsRoot"]),
                digest_logs=list(digest.get("logs", [])) if isinstance(digest, dict) else [],
            )
        except KeyError as e:
            raise MalformedPayload("header is missing field {}".format(e), payload=data_decoded) from e

    @classmethod
    def from_json(cls, payload: str) -> "Header":
        """Decode a header pushed as JSON text by the finalized heads subscription."""
        try:
            data = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise MalformedPayload("header payload is not valid JSON: {}".format(e), payload=payload) from e
        return cls.fix_decoded_values(data)


@dataclass
class Block:
    """
    Dataclass for a block fetched by hash.
    """

    header: Header
    extrinsics: List[Any]

    @classmethod
    def fix_decoded_values(cls, data_decoded: Any) -> "Block":
        data_decoded = _require_mapping(data_decoded, "Block")
        if "header" not in data_decoded:
            raise MalformedPayload("block is missing its header", payload=data_decoded)
        extrinsics = data_decoded.get("extrinsics") or []
        return cls(
            header=Header.fix_decoded_values(data_decoded["header"]),
            extrinsics=[getattr(extrinsic, "value", extrinsic) for extrinsic in extrinsics],
        )


@dataclass
class Twin:
    """
    Dataclass for twin storage.
    """

    id: int
    account_id: str
    ip: str
    entities: List[Any]
    version: int

    @classmethod
    def fix_decoded_values(cls, data_decoded: Any) -> "Twin":
        data_decoded = _require_mapping(data_decoded, "Twin")
        return cls(
            id=data_decoded.get("id", 0),
            account_id=data_decoded.get("account_id", ""),
            # renamed to relay in later runtimes
            ip=_bytes_to_str(data_decoded.get("ip", data_decoded.get("relay"))),
            entities=data_decoded.get("entities", []) or [],
            version=data_decoded.get("version", 0),
        )


@dataclass
class Farm:
    """
    Dataclass for farm storage.
    """

    id: int
    name: str
    twin_id: int
    pricing_policy_id: int
    certification: str
    public_ips: List[Any]
    dedicated_farm: bool
    version: int

    @classmethod
    def fix_decoded_values(cls, data_decoded: Any) -> "Farm":
        data_decoded = _require_mapping(data_decoded, "Farm")
        return cls(
            id=data_decoded.get("id", 0),
            name=_bytes_to_str(data_decoded.get("name")),
            twin_id=data_decoded.get("twin_id", 0),
            pricing_policy_id=data_decoded.get("pricing_policy_id", 0),
            certification=str(data_decoded.get("certification", "NotCertified")),
            public_ips=data_decoded.get("public_ips", []) or [],
            dedicated_farm=bool(data_decoded.get("dedicated_farm", False)),
            version=data_decoded.get("version", 0),
        )


@dataclass
class Node:
    """
    Dataclass for node storage.
    """

    id: int
    farm_id: int
    twin_id: int
    resources: Dict[str, Any]
    location: Dict[str, Any]
    public_config: Optional[Dict[str, Any]]
    created: int
    farming_policy_id: int
    certification: str
    version: int

    @classmethod
    def fix_decoded_values(cls, data_decoded: Any) -> "Node":
        data_decoded = _require_mapping(data_decoded, "Node")
        return cls(
            id=data_decoded.get("id", 0),
            farm_id=data_decoded.get("farm_id", 0),
            twin_id=data_decoded.get("twin_id", 0),
            resources=data_decoded.get("resources", {}) or {},
            location=data_decoded.get("location", {}) or {},
            public_config=data_decoded.get("public_config"),
            created=data_decoded.get("created", 0),
            farming_policy_id=data_decoded.get("farming_policy_id", 0),
            certification=str(data_decoded.get("certification", "Diy")),
            version=data_decoded.get("version", 0),
        )


@dataclass
class Contract:
    """
    Dataclass for smart contract storage.
    """

    contract_id: int
    twin_id: int
    state: Any
    contract_type: Any
    solution_provider_id: Optional[int]
    version: int

    @classmethod
    def fix_decoded_values(cls, data_decoded: Any) -> "Contract":
        data_decoded = _require_mapping(data_decoded, "Contract")
        return cls(
            contract_id=data_decoded.get("contract_id", 0),
            twin_id=data_decoded.get("twin_id", 0),
            state=data_decoded.get("state"),
            contract_type=data_decoded.get("contract_type"),
            solution_provider_id=data_decoded.get("solution_provider_id"),
            version=data_decoded.get("version", 0),
        )


@dataclass
class AccountData:
    """
    Dataclass for the balances part of System.Account
    """

    free: int
    reserved: int
    misc_frozen: int
    fee_frozen: int

    @classmethod
    def fix_decoded_values(cls, data_decoded: Any) -> "AccountData":
        """Accepts either the full AccountInfo or its ``data`` field."""
        data_decoded = _require_mapping(data_decoded, "AccountData")
        if "data" in data_decoded:
            data_decoded = _require_mapping(data_decoded["data"], "AccountData")
        # newer runtimes merged misc_frozen and fee_frozen into frozen
        frozen = data_decoded.get("frozen", 0)
        return cls(
            free=data_decoded.get("free", 0),
            reserved=data_decoded.get("reserved", 0),
            misc_frozen=data_decoded.get("misc_frozen", frozen),
            fee_frozen=data_decoded.get("fee_frozen", frozen),
        )

    @staticmethod
    def _get_null() -> "AccountData":
        return AccountData(free=0, reserved=0, misc_frozen=0, fee_frozen=0)


@dataclass
class ChainEvent:
    """
    Dataclass for an event emitted in a block.
    """

    module_id: str
    event_id: str
    attributes: Any
    phase: Any = None
    extrinsic_idx: Optional[int] = None

    @classmethod
    def fix_decoded_values(cls, data_decoded: Any) -> "ChainEvent":
        data_decoded = _require_mapping(data_decoded, "ChainEvent")
        event = _require_mapping(data_decoded.get("event"), "ChainEvent.event")
        try:
            return cls(
                module_id=event["module_id"],
                event_id=event["event_id"],
                attributes=event.get("attributes"),
                phase=data_decoded.get("phase"),
                extrinsic_idx=data_decoded.get("extrinsic_idx"),
            )
        except KeyError as e:
            raise MalformedPayload("event is missing field {}".format(e), payload=data_decoded) from e

    @classmethod
    def list_from_records(cls, records: List[Any]) -> List["ChainEvent"]:
        return [cls.fix_decoded_values(record) for record in records]
