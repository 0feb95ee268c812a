import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT)

from res_indexer.core.config import IndexerConfig
from res_indexer.core.indexer.notifier import NotificationEmitter
from res_indexer.core.indexer.scanner import BatchScanner
from res_indexer.core.indexer.sync import SyncManager
from res_indexer.core.store import SQLiteStore
from tests.fakes.fake_chain_source import PAIR, FakeChainSource


@pytest.fixture
def config(tmp_path):
    return IndexerConfig.from_dict({
        "json_rpc_urls": ["http://localhost:8545"],
        "contracts": {
            "res_token": "0x" + "11" * 20,
            "property_nft": "0x" + "22" * 20,
            "kyc_registry": "0x" + "33" * 20,
            "res_matic_pair": PAIR,
            "price_oracle": "0x" + "55" * 20,
        },
        "start_block": 0,
        "batch_size": 50,
        "batch_delay_ms": 10,
        "max_workers": 4,
        "sync_interval_ms": 60000,
        "catch_up_threshold_blocks": 100,
        "enable_realtime_sync": False,
        "db_path": str(tmp_path / "indexer.db"),
    })


@pytest.fixture
def store(config):
    s = SQLiteStore(config.db_path)
    yield s
    s.close()


@pytest.fixture
def source():
    return FakeChainSource(head=250)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def emitter(store):
    return NotificationEmitter(store)


@pytest.fixture
def scanner(source, store, config, emitter, sleeps):
    return BatchScanner(source, store, config, emitter=emitter, sleep=sleeps.append)


@pytest.fixture
def manager(source, store, config, scanner, emitter):
    m = SyncManager(source, store, config, scanner=scanner, emitter=emitter)
    yield m
    m.stop(wait=True, timeout=5)
