import os

import pandas as pd
import pytest

from res_indexer.core.errors import StoreError
from res_indexer.core.store import SCHEMA, SQLiteStore
from res_indexer.core.types import (
    EventKind,
    KYCEventRecord,
    Notification,
    PropertyMintRecord,
    TransferRecord,
)
from tests.fakes.fake_chain_source import ALICE, BOB, CAROL


def _transfer(tx="0x01", log_index=0, block=10, frm=ALICE, to=BOB, amount="1"):
    return TransferRecord(
        transaction_hash=tx, block_number=block, log_index=log_index, timestamp=1000 + block,
        from_address=frm, to_address=to, amount=amount,
    )


def _kyc(user, event_type, is_active, block, log_index=0, tx=None):
    return KYCEventRecord(
        transaction_hash=tx or f"0x{block:04x}{log_index:04x}{event_type[0]}",
        block_number=block, log_index=log_index, timestamp=1000 + block,
        user_address=user, event_type=event_type, is_active=is_active,
    )


def _kind_for(record):
    table = {
        ("whitelisted", True): EventKind.KYC_WHITELISTED,
        ("whitelisted", False): EventKind.KYC_WHITELIST_REMOVED,
        ("blacklisted", True): EventKind.KYC_BLACKLISTED,
        ("blacklisted", False): EventKind.KYC_BLACKLIST_REMOVED,
    }
    return table[(record.event_type, record.is_active)]


def _apply(store, *records):
    for record in records:
        store.upsert_batch(_kind_for(record), [record])


# ---------------- Idempotent upsert ----------------
def test_upsert_is_idempotent(store):
    assert store.upsert_batch(EventKind.RES_TRANSFER, [_transfer()]) == 1
    assert store.upsert_batch(EventKind.RES_TRANSFER, [_transfer()]) == 0
    assert store.count(EventKind.RES_TRANSFER) == 1


def test_same_tx_different_log_index_are_distinct(store):
    inserted = store.upsert_batch(
        EventKind.RES_TRANSFER, [_transfer(log_index=0), _transfer(log_index=1)]
    )
    assert inserted == 2


def test_duplicate_keeps_first_written_row(store):
    store.upsert_batch(EventKind.RES_TRANSFER, [_transfer(amount="5")])
    store.upsert_batch(EventKind.RES_TRANSFER, [_transfer(amount="999")])
    assert store.recent(EventKind.RES_TRANSFER)[0]["amount"] == "5"


def test_empty_batch_is_a_noop(store):
    assert store.upsert_batch(EventKind.RES_TRANSFER, []) == 0


def test_failed_batch_keeps_nothing(store):
    mint = PropertyMintRecord(
        transaction_hash="0x02", block_number=11, log_index=0, timestamp=1011,
        token_id="1", owner_address=ALICE, metadata_uri="ipfs://x",
    )
    # a mint record has no place in the transfers table
    with pytest.raises(StoreError):
        store.upsert_batch(EventKind.RES_TRANSFER, [_transfer(), mint])
    assert store.count(EventKind.RES_TRANSFER) == 0


# ---------------- Cursor ----------------
def test_cursor_bootstraps_one_before_start_block(store):
    assert store.ensure_cursor(101).last_synced_block == 100


def test_cursor_bootstrap_from_genesis(store):
    assert store.ensure_cursor(0).last_synced_block == 0


def test_cursor_bootstrap_does_not_overwrite(store):
    store.ensure_cursor(101)
    store.set_cursor(500)
    assert store.ensure_cursor(101).last_synced_block == 500


def test_cursor_never_moves_backwards(store):
    store.ensure_cursor(0)
    store.set_cursor(250)
    cursor = store.set_cursor(200)
    assert cursor.last_synced_block == 250
    assert cursor.last_sync_timestamp is not None


def test_missing_cursor_reads_as_zero(store):
    assert store.get_cursor().last_synced_block == 0


def test_syncing_flag(store):
    store.ensure_cursor(0)
    store.set_syncing(True)
    assert store.get_cursor().is_syncing is True
    store.set_syncing(False)
    assert store.get_cursor().is_syncing is False


# ---------------- KYC projection ----------------
def test_whitelist_then_blacklist_is_not_eligible(store):
    _apply(store, _kyc(ALICE, "whitelisted", True, 10), _kyc(ALICE, "blacklisted", True, 20))

    status = store.get_kyc_status(ALICE)
    assert status.is_whitelisted is True
    assert status.is_blacklisted is True
    assert status.is_eligible is False
    assert status.last_updated_block == 20


def test_whitelisted_user_is_eligible(store):
    _apply(store, _kyc(ALICE, "whitelisted", True, 10))
    assert store.get_kyc_status(ALICE).is_eligible is True


def test_blacklist_removal_restores_eligibility(store):
    _apply(
        store,
        _kyc(ALICE, "whitelisted", True, 10),
        _kyc(ALICE, "blacklisted", True, 20),
        _kyc(ALICE, "blacklisted", False, 30),
    )
    assert store.get_kyc_status(ALICE).is_eligible is True


def test_older_event_delivered_late_does_not_override(store):
    _apply(store, _kyc(ALICE, "whitelisted", False, 30), _kyc(ALICE, "whitelisted", True, 10))

    status = store.get_kyc_status(ALICE)
    assert status.is_whitelisted is False
    assert status.last_updated_block == 30


def test_log_index_orders_events_in_the_same_block(store):
    _apply(
        store,
        _kyc(ALICE, "whitelisted", False, 10, log_index=5),
        _kyc(ALICE, "whitelisted", True, 10, log_index=2),
    )
    assert store.get_kyc_status(ALICE).is_whitelisted is False


def test_replayed_kyc_event_is_not_reapplied(store):
    first = _kyc(ALICE, "whitelisted", True, 10)
    _apply(store, first, _kyc(ALICE, "whitelisted", False, 20))
    _apply(store, first)
    assert store.get_kyc_status(ALICE).is_whitelisted is False


def test_unknown_address_has_default_status(store):
    status = store.get_kyc_status(CAROL)
    assert status.is_whitelisted is False
    assert status.is_blacklisted is False
    assert status.last_updated_block is None


def test_kyc_kind_filters(store):
    _apply(
        store,
        _kyc(ALICE, "whitelisted", True, 10),
        _kyc(BOB, "whitelisted", True, 11),
        _kyc(ALICE, "blacklisted", True, 12),
    )
    assert store.count(EventKind.KYC_WHITELISTED) == 2
    assert store.count(EventKind.KYC_BLACKLISTED) == 1
    assert store.count(EventKind.KYC_WHITELIST_REMOVED) == 0
    rows = store.by_address(EventKind.KYC_WHITELISTED, ALICE)
    assert [r["block_number"] for r in rows] == [10]


# ---------------- Notifications ----------------
def _notification(type_="transfer", tx="0x01", log_index=0):
    return Notification(
        type=type_, title="Large RES Transfer", message="m", transaction_hash=tx,
        log_index=log_index, data={"transactionHash": tx},
    )


def test_notifications_are_deduplicated_per_event_and_type(store):
    assert store.enqueue_notification(_notification()) is True
    assert store.enqueue_notification(_notification()) is False
    assert store.enqueue_notification(_notification(type_="swap")) is True
    assert len(store.pending_notifications()) == 2


def test_mark_notification_sent(store):
    store.enqueue_notification(_notification())
    pending = store.pending_notifications()
    assert pending[0]["data"] == {"transactionHash": "0x01"}

    store.mark_notification_sent(pending[0]["id"])
    assert store.pending_notifications() == []


# ---------------- Read helpers / export ----------------
def test_recent_and_by_address(store):
    store.upsert_batch(EventKind.RES_TRANSFER, [
        _transfer(tx="0x01", block=10, frm=ALICE, to=BOB),
        _transfer(tx="0x02", block=11, frm=BOB, to=CAROL),
        _transfer(tx="0x03", block=12, frm=CAROL, to=ALICE),
    ])

    assert [r["block_number"] for r in store.recent(EventKind.RES_TRANSFER, limit=2)] == [12, 11]
    assert [r["block_number"] for r in store.by_address(EventKind.RES_TRANSFER, "0x" + ALICE[2:].upper())] == [12, 10]
    assert [r["block_number"] for r in store.by_address(EventKind.RES_TRANSFER, BOB, limit=1, offset=1)] == [10]


def test_to_frame_orders_rows(store):
    store.upsert_batch(EventKind.RES_TRANSFER, [
        _transfer(tx="0x02", block=12),
        _transfer(tx="0x01", block=10),
    ])
    df = store.to_frame(EventKind.RES_TRANSFER)
    assert isinstance(df, pd.DataFrame)
    assert df["block_number"].tolist() == [10, 12]


def test_export_pickles_writes_every_table(store, tmp_path):
    store.upsert_batch(EventKind.RES_TRANSFER, [_transfer()])
    written = store.export_pickles(str(tmp_path / "export"))

    assert set(written) == set(SCHEMA)
    df = pd.read_pickle(written["res_transfers"])
    assert len(df) == 1
    assert os.path.exists(written["kyc_events"])


def test_store_survives_reopen(tmp_path):
    path = str(tmp_path / "nested" / "indexer.db")
    first = SQLiteStore(path)
    first.ensure_cursor(0)
    first.upsert_batch(EventKind.RES_TRANSFER, [_transfer()])
    first.set_cursor(42)
    first.close()

    second = SQLiteStore(path)
    try:
        assert second.count(EventKind.RES_TRANSFER) == 1
        assert second.get_cursor().last_synced_block == 42
    finally:
        second.close()
