import logging
import os

import pytest

from tfclient.tfchain.chain_data import AccountData, BlockHash, Header
from tfclient.tfchain.chain_functions import TFChain

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Runs against a live node, e.g. TFCHAIN_RPC=wss://tfchain.grid.tf
# pytest tests/tfchain/test_rpc.py -rP

TFCHAIN_RPC = os.getenv("TFCHAIN_RPC")

pytestmark = pytest.mark.skipif(TFCHAIN_RPC is None, reason="TFCHAIN_RPC is not set")

ALICE = "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY"


@pytest.fixture(scope="module")
def tfchain():
    with TFChain(TFCHAIN_RPC) as tfchain:
        yield tfchain


# pytest tests/tfchain/test_rpc.py::test_get_hash_at_height -rP


def test_get_hash_at_height(tfchain):
    block_hash = tfchain.get_hash_at_height(1)
    logger.info("block 1: %s", block_hash)

    assert isinstance(block_hash, BlockHash)
    assert tfchain.get_block_by_hash(str(block_hash)).header.number == 1


# pytest tests/tfchain/test_rpc.py::test_height_at_timestamp -rP


def test_height_at_timestamp(tfchain):
    block_hash = tfchain.get_hash_at_height(1000)
    ts = tfchain.block_timestamp(block_hash) // 1000

    height = tfchain.height_at_timestamp(ts)
    logger.info("height at %s: %s", ts, height)

    before = tfchain.block_timestamp(tfchain.get_hash_at_height(height - 1)) // 1000
    after = tfchain.block_timestamp(tfchain.get_hash_at_height(height)) // 1000
    assert before <= ts < after


# pytest tests/tfchain/test_rpc.py::test_get_farm_by_id -rP


def test_get_farm_by_id(tfchain):
    farm = tfchain.get_farm_by_id(1)
    logger.info("farm 1: %s", farm)

    assert farm is not None
    assert tfchain.get_farm_id_by_name(farm.name) == farm.id
    assert tfchain.farm_count() >= 1


# pytest tests/tfchain/test_rpc.py::test_get_account_free_balance -rP


def test_get_account_free_balance(tfchain):
    assert isinstance(tfchain.get_account_free_balance(ALICE), AccountData)


# pytest tests/tfchain/test_rpc.py::test_finalized_block_headers -rP


def test_finalized_block_headers(tfchain):
    with tfchain.finalized_block_headers() as headers:
        first = headers.next_header()
        second = headers.next_header()

    logger.info("finalized: %s, %s", first.number, second.number)
    assert isinstance(first, Header)
    assert second.number > first.number
