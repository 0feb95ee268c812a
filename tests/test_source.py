from unittest.mock import MagicMock, PropertyMock

import pytest

import res_indexer.core.source as source_module
from res_indexer.core.abis import ERC20_TRANSFER_EVENT_ABI, EVENT_ABIS, event_signature, event_topic
from res_indexer.core.errors import SourceConnectionError, SourceError
from res_indexer.core.source import ChainSource, _LogPoller
from res_indexer.core.types import EventKind
from tests.fakes.fake_chain_source import ALICE, BOB


def _log(block, log_index, tx_byte=1, args=None):
    return {
        "transactionHash": bytes([tx_byte]) * 32,
        "logIndex": log_index,
        "blockNumber": block,
        "address": "0x" + "11" * 20,
        "args": args or {"from": ALICE, "to": BOB, "value": 1},
    }


def _fake_decode(codec, abi, log):
    if log["args"] == "garbage":
        raise ValueError("cannot decode")
    return dict(log, event=abi["name"])


@pytest.fixture
def w3():
    mock = MagicMock()
    mock.eth.chain_id = 80002
    mock.eth.block_number = 500
    mock.eth.get_logs.return_value = []
    mock.eth.get_block.return_value = {"timestamp": 1_700_000_123}
    return mock


@pytest.fixture
def chain(config, w3, monkeypatch):
    monkeypatch.setattr(source_module, "get_event_data", _fake_decode)
    return ChainSource(config, w3=w3).connect()


def test_event_topics():
    assert event_signature(ERC20_TRANSFER_EVENT_ABI) == "Transfer(address,address,uint256)"
    assert event_topic(ERC20_TRANSFER_EVENT_ABI) == (
        "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
    )
    # ERC-20 and ERC-721 Transfer share topic0
    assert event_topic(EVENT_ABIS[EventKind.PROPERTY_TRANSFER]) == event_topic(ERC20_TRANSFER_EVENT_ABI)


def test_connect_reads_chain_and_tracks_configured_kinds(chain):
    assert chain.chain_id == 80002
    assert set(chain.tracked_kinds()) == set(EventKind)


def test_connection_failure_is_wrapped(config):
    w3 = MagicMock()
    type(w3.eth).chain_id = PropertyMock(side_effect=ConnectionError("refused"))
    with pytest.raises(SourceConnectionError, match="refused"):
        ChainSource(config, w3=w3).connect()


def test_unconfigured_kind_yields_nothing(config, w3):
    config.contracts["price_oracle"] = None
    chain = ChainSource(config, w3=w3).connect()

    assert EventKind.PRICE_UPDATE not in chain.tracked_kinds()
    assert chain.query_events(EventKind.PRICE_UPDATE, 1, 100) == []
    w3.eth.get_logs.assert_not_called()


def test_query_filters_by_address_and_topic(chain, w3):
    chain.query_events(EventKind.RES_TRANSFER, 10, 20)

    filt = w3.eth.get_logs.call_args[0][0]
    assert filt["fromBlock"] == 10
    assert filt["toBlock"] == 20
    assert filt["address"].lower() == "0x" + "11" * 20
    assert filt["topics"] == [event_topic(ERC20_TRANSFER_EVENT_ABI)]


def test_query_decodes_and_orders_events(chain, w3):
    w3.eth.get_logs.return_value = [_log(12, 3, tx_byte=2), _log(11, 0), _log(12, 1, tx_byte=3)]
    events = chain.query_events(EventKind.RES_TRANSFER, 10, 20)

    assert [(e.block_number, e.log_index) for e in events] == [(11, 0), (12, 1), (12, 3)]
    assert events[0].transaction_hash == "0x" + "01" * 32
    assert events[0].args["value"] == 1
    assert events[0].kind is EventKind.RES_TRANSFER
    assert events[0].address == "0x" + "11" * 20


def test_undecodable_logs_are_skipped(chain, w3):
    w3.eth.get_logs.return_value = [_log(11, 0, args="garbage"), _log(11, 1)]
    events = chain.query_events(EventKind.RES_TRANSFER, 10, 20)
    assert [e.log_index for e in events] == [1]


def test_oversized_range_is_split(chain, w3):
    def get_logs(filt):
        if filt["toBlock"] - filt["fromBlock"] >= 10:
            raise ValueError({"code": -32005, "message": "query returned more than 10000 results"})
        return [_log(filt["fromBlock"], 0, tx_byte=filt["fromBlock"] % 256)]

    w3.eth.get_logs.side_effect = get_logs
    events = chain.query_events(EventKind.RES_TRANSFER, 0, 39)

    ranges = [(c[0][0]["fromBlock"], c[0][0]["toBlock"]) for c in w3.eth.get_logs.call_args_list]
    answered = [r for r in ranges if r[1] - r[0] < 10]
    assert answered[0][0] == 0 and answered[-1][1] == 39
    assert all(b + 1 == a for (_, b), (a, _) in zip(answered, answered[1:]))
    assert len(events) == len(answered)


@pytest.mark.parametrize("message", [
    "429 Client Error: Too Many Requests for url: https://rpc.example/",
    "rate limit exceeded",
])
def test_rate_limited_window_is_not_split(chain, w3, message):
    w3.eth.get_logs.side_effect = ValueError(message)
    with pytest.raises(SourceError):
        chain.query_events(EventKind.RES_TRANSFER, 1, 1000)
    assert w3.eth.get_logs.call_count == 1


def test_provider_errors_raise_source_error(chain, w3):
    w3.eth.get_logs.side_effect = TimeoutError("read timed out")
    with pytest.raises(SourceError) as exc_info:
        chain.query_events(EventKind.SWAP, 100, 200)

    err = exc_info.value
    assert err.kind is EventKind.SWAP
    assert (err.from_block, err.to_block) == (100, 200)


def test_head_block(chain):
    assert chain.head_block() == 500


def test_head_block_failure_is_wrapped(config):
    w3 = MagicMock()
    w3.eth.chain_id = 80002
    type(w3.eth).block_number = PropertyMock(side_effect=TimeoutError("slow"))
    chain = ChainSource(config, w3=w3).connect()
    with pytest.raises(SourceError, match="head block"):
        chain.head_block()


def test_block_timestamps_are_cached(chain, w3):
    assert chain.block_timestamp(42) == 1_700_000_123
    assert chain.block_timestamp(42) == 1_700_000_123
    w3.eth.get_block.assert_called_once_with(42)


def test_unconnected_source_raises(config):
    with pytest.raises(SourceError):
        ChainSource(config).head_block()


def test_subscriptions(chain, config):
    config.realtime_poll_interval_ms = 60000
    chain.subscribe(EventKind.RES_TRANSFER, lambda event: None)
    try:
        with pytest.raises(ValueError):
            chain.subscribe(EventKind.RES_TRANSFER, lambda event: None)
        assert chain.subscribed_kinds() == [EventKind.RES_TRANSFER]
    finally:
        chain.unsubscribe_all()
    assert chain.subscribed_kinds() == []


def test_poller_delivers_new_blocks_once(chain, w3):
    received = []
    poller = _LogPoller(chain, EventKind.RES_TRANSFER, received.append, interval=60)
    poller._next_block = 501
    w3.eth.block_number = 503
    w3.eth.get_logs.return_value = [_log(502, 0)]

    poller._poll_once()
    assert [e.block_number for e in received] == [502]
    assert w3.eth.get_logs.call_args[0][0]["fromBlock"] == 501

    poller._poll_once()
    assert len(received) == 1
    assert poller._next_block == 504


def test_poller_isolates_handler_errors(chain, w3):
    def explode(event):
        raise RuntimeError("handler bug")

    poller = _LogPoller(chain, EventKind.RES_TRANSFER, explode, interval=60)
    poller._next_block = 500
    w3.eth.get_logs.return_value = [_log(500, 0)]

    poller._poll_once()
    assert poller._next_block == 501
