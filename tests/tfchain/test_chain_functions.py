import pytest

from tfclient.tfchain.chain_data import AccountData, Block, BlockHash, ChainEvent, Contract, Farm, Node, Twin
from tfclient.tfchain.chain_functions import KeypairFrom, TFChain, _trunc_div
from tfclient.tfchain.errors import MalformedPayload, PreconditionViolated, Rejected, TransientDisconnect
from tfclient.tfchain.mock.local_chain_backend import LocalMockChainBackend

# pytest tests/tfchain/test_chain_functions.py -rP

ALICE = "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY"
T0_MS = 1_650_000_000_000


@pytest.fixture
def backend():
    backend = LocalMockChainBackend()
    backend.add_regular_blocks(T0_MS, count=10)
    return backend


@pytest.fixture
def tfchain(backend):
    return TFChain(backend=backend)


def test_trunc_div_rounds_toward_zero():
    assert _trunc_div(13, 6) == 2
    assert _trunc_div(-13, 6) == -2
    assert _trunc_div(-5, 6) == 0
    assert _trunc_div(5, 6) == 0
    assert _trunc_div(0, 6) == 0


def test_invalid_max_attempts(backend):
    with pytest.raises(ValueError):
        TFChain(backend=backend, max_attempts=0)


def test_get_twin_by_id(backend, tfchain):
    backend.set_storage_map(
        "TfgridModule", "Twins", 1, {"version": 1, "id": 1, "account_id": ALICE, "ip": "::1", "entities": []}
    )

    twin = tfchain.get_twin_by_id(1)

    assert isinstance(twin, Twin)
    assert twin.account_id == ALICE
    assert twin.ip == "::1"


def test_missing_twin_is_none(tfchain):
    assert tfchain.get_twin_by_id(404) is None


def test_get_farm_by_id(backend, tfchain):
    backend.set_storage_map("TfgridModule", "Farms", 1, {"id": 1, "name": "freefarm", "twin_id": 1})

    farm = tfchain.get_farm_by_id(1, block=backend.blocks[5][0])

    assert isinstance(farm, Farm)
    assert farm.name == "freefarm"
    assert tfchain.get_farm_by_id(2) is None


def test_get_farm_by_id_accepts_hex_block(backend, tfchain):
    backend.set_storage_map("TfgridModule", "Farms", 1, {"id": 1, "name": "freefarm", "twin_id": 1})

    assert tfchain.get_farm_by_id(1, block=str(backend.blocks[5][0])).id == 1


def test_get_farm_id_by_name(backend, tfchain):
    backend.set_storage_map("TfgridModule", "FarmIdByName", "freefarm", 1)
    backend.set_storage_map("TfgridModule", "FarmIdByName", "default", 0)

    assert tfchain.get_farm_id_by_name("freefarm") == 1
    assert tfchain.get_farm_id_by_name("default") is None
    assert tfchain.get_farm_id_by_name("unknown") is None


def test_counts(backend, tfchain):
    backend.set_storage_value("TfgridModule", "FarmID", 12)
    backend.set_storage_value("TfgridModule", "NodeID", 34)

    assert tfchain.farm_count() == 12
    assert tfchain.node_count() == 34
    assert tfchain.contract_count() == 0


def test_get_node_and_contract(backend, tfchain):
    backend.set_storage_map("TfgridModule", "Nodes", 7, {"id": 7, "farm_id": 1, "twin_id": 9})
    backend.set_storage_map(
        "SmartContractModule",
        "Contracts",
        2**40,
        {"contract_id": 2**40, "twin_id": 9, "state": "Created", "contract_type": {"NodeContract": {}}},
    )

    node = tfchain.get_node_by_id(7)
    contract = tfchain.get_contract_by_id(2**40)

    assert isinstance(node, Node)
    assert node.farm_id == 1
    assert isinstance(contract, Contract)
    assert contract.contract_id == 2**40
    assert tfchain.get_node_by_id(8) is None
    assert tfchain.get_contract_by_id(1) is None


def test_get_farm_payout_address(backend, tfchain):
    backend.set_storage_map("TfgridModule", "FarmPayoutV2AddressByFarmID", 1, "GBSTELLARADDRESS")

    assert tfchain.get_farm_payout_address(1) == "GBSTELLARADDRESS"
    assert tfchain.get_farm_payout_address(2) is None


def test_get_account_free_balance(backend, tfchain):
    backend.set_storage_map("System", "Account", ALICE, {"nonce": 0, "data": {"free": 10**12, "reserved": 0}})

    assert tfchain.get_account_free_balance(ALICE).free == 10**12


def test_unknown_account_has_zero_balance(tfchain):
    assert tfchain.get_account_free_balance(ALICE) == AccountData(free=0, reserved=0, misc_frozen=0, fee_frozen=0)


def test_invalid_account_is_rejected_before_querying(backend, tfchain):
    with pytest.raises(MalformedPayload):
        tfchain.get_account_free_balance("nobody")

    assert backend.calls["read_storage_map"] == 0


def test_get_block_by_hash(backend, tfchain):
    block = tfchain.get_block_by_hash(str(backend.blocks[3][0]))

    assert isinstance(block, Block)
    assert block.header.number == 3
    assert block.header.parent_hash == backend.blocks[2][0]


def test_unknown_block_is_none(tfchain):
    assert tfchain.get_block_by_hash("0x" + "00" * 32) is None


@pytest.mark.parametrize("block_hash", ["0x1234", "ab" * 32, "0x" + "gg" * 32])
def test_malformed_block_hash_is_rejected_before_querying(backend, tfchain, block_hash):
    with pytest.raises(MalformedPayload):
        tfchain.get_block_by_hash(block_hash)

    assert backend.calls["block_by_hash"] == 0


def test_get_block_events(backend, tfchain):
    block_hash = backend.blocks[4][0]
    backend.set_events(
        block_hash,
        [{"phase": "ApplyExtrinsic", "extrinsic_idx": 1, "event": {"module_id": "System", "event_id": "ExtrinsicSuccess", "attributes": {}}}],
    )

    events = tfchain.get_block_events(block_hash)

    assert events == [ChainEvent("System", "ExtrinsicSuccess", {}, "ApplyExtrinsic", 1)]
    assert tfchain.get_block_events() == []


def test_block_timestamp(backend, tfchain):
    assert tfchain.block_timestamp() == T0_MS + 9 * 6000
    assert tfchain.block_timestamp(backend.blocks[1][0]) == T0_MS


def test_block_timestamp_missing(backend, tfchain):
    # genesis carries no timestamp
    with pytest.raises(PreconditionViolated):
        tfchain.block_timestamp(backend.blocks[0][0])


def test_get_hash_at_height(backend, tfchain):
    assert tfchain.get_hash_at_height(3) == backend.blocks[3][0]
    assert isinstance(tfchain.get_hash_at_height(3), BlockHash)
    assert tfchain.get_hash_at_height(11) is None


def test_create_twin(backend, tfchain):
    extrinsic_hash = tfchain.create_twin("::1")

    assert extrinsic_hash.startswith("0x")
    assert backend.extrinsics == [
        {"call_module": "TfgridModule", "call_function": "create_twin", "call_params": {"ip": "::1"}}
    ]


def test_create_farm_waits_for_inclusion(backend, tfchain):
    block_hash = tfchain.create_farm("freefarm")

    assert block_hash == str(backend.blocks[-1][0])
    assert backend.extrinsics[0]["call_params"] == {"name": "freefarm"}


def test_create_farm_with_public_ips(backend, tfchain):
    tfchain.create_farm("freefarm", public_ips=[])

    assert backend.extrinsics[0]["call_params"] == {"name": "freefarm", "public_ips": []}


def test_submission_without_signer():
    backend = LocalMockChainBackend(signed=False)
    tfchain = TFChain(backend=backend)

    with pytest.raises(PreconditionViolated):
        tfchain.create_twin("::1")

    assert backend.calls["submit_extrinsic"] == 1


def test_queries_are_retried_on_disconnect(backend, tfchain):
    backend.set_storage_map("TfgridModule", "Farms", 1, {"id": 1, "name": "freefarm", "twin_id": 1})
    backend.fail_next("read_storage_map", times=5)

    assert tfchain.get_farm_by_id(1).name == "freefarm"
    assert backend.calls["read_storage_map"] == 6


def test_max_attempts_is_configurable(backend):
    tfchain = TFChain(backend=backend, max_attempts=2)
    backend.fail_next("block_hash_at_height", times=2)

    with pytest.raises(TransientDisconnect):
        tfchain.get_hash_at_height(1)

    assert backend.calls["block_hash_at_height"] == 2


def test_rejection_is_not_retried(backend, tfchain):
    backend.fail_next("submit_extrinsic", error=lambda: Rejected("TwinWithSameAccountIdExists"))

    with pytest.raises(Rejected) as exc_info:
        tfchain.create_twin("::1")

    assert exc_info.value.reason == "TwinWithSameAccountIdExists"
    assert backend.calls["submit_extrinsic"] == 1
    assert backend.extrinsics == []


def test_close(backend):
    with TFChain(backend=backend) as tfchain:
        headers = tfchain.finalized_block_headers()

    assert backend.closed
    assert headers.next_header() is None


def test_signer_from_uri(backend):
    tfchain = TFChain(phrase="//Alice", keypair_from=KeypairFrom.URI, backend=backend)

    assert tfchain.address == ALICE
    assert TFChain(backend=backend).address is None
