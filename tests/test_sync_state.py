from fakes import CHAIN_ID, NFT_ID, BASE_BLOCK, block_time, increase, collect
from sync_state import (
    MissingEvent, PositionSyncState, convert_missing_event_to_raw_event, raw_event_to_missing_event,
    merge_events, find_confirmed_missing_events
)


def missing(block_number, log_index=0, tx_hash=None, amount1=0):
    return raw_event_to_missing_event(
        collect(block_number, log_index=log_index, amount1=amount1, tx_hash=tx_hash)
    )


def test_add_is_idempotent_by_ordering_tuple():
    state = PositionSyncState("p")
    state.add_missing_event(missing(BASE_BLOCK + 5, amount1=1))
    state.add_missing_event(missing(BASE_BLOCK + 5, amount1=2))
    assert len(state) == 1
    assert state.get_missing_events_sorted()[0].amount1 == 2


def test_sorted_by_ordering_tuple():
    state = PositionSyncState("p", [missing(BASE_BLOCK + 9), missing(BASE_BLOCK + 3, log_index=4),
                                    missing(BASE_BLOCK + 3, log_index=1)])
    keys = [e.ordering_key for e in state.get_missing_events_sorted()]
    assert keys == sorted(keys)


def test_prune_keeps_only_blocks_above_finalized():
    state = PositionSyncState("p", [missing(BASE_BLOCK + 10), missing(BASE_BLOCK + 20)])

    assert state.prune_events(BASE_BLOCK + 9) == 0
    assert len(state) == 2
    assert state.prune_events(BASE_BLOCK + 10) == 1
    assert [e.block_number for e in state.get_missing_events_sorted()] == [BASE_BLOCK + 20]
    assert state.last_finalized_block == BASE_BLOCK + 10


def test_remove_by_hash_and_log_index():
    state = PositionSyncState("p", [missing(BASE_BLOCK + 1, tx_hash="0xAB", log_index=3),
                                    missing(BASE_BLOCK + 1, tx_hash="0xab", log_index=4)])
    assert state.remove_missing_event("0xab", 3)
    assert not state.remove_missing_event("0xab", 3)
    assert state.remove_missing_events_by_tx_hash("0xAB") == 1
    assert not state.has_missing_events()


def test_json_round_trip_through_database(database, position_id):
    state = PositionSyncState(position_id, [missing(BASE_BLOCK + 7, amount1=10 ** 30)])
    state.prune_events(BASE_BLOCK)
    state.save(database)

    loaded = PositionSyncState.load(database, position_id)
    assert loaded.get_missing_events_sorted() == state.get_missing_events_sorted()
    assert loaded.last_finalized_block == BASE_BLOCK

    loaded.delete(database)
    assert database.get_sync_state(position_id) is None


def test_serialized_amounts_are_strings():
    data = missing(BASE_BLOCK + 1, amount1=5).to_dict()
    assert data["blockNumber"] == str(BASE_BLOCK + 1)
    assert data["amount1"] == "5"
    assert MissingEvent.from_dict(data).amount1 == 5


def test_conversion_to_raw_event():
    event = MissingEvent("INCREASE_LIQUIDITY", block_time(BASE_BLOCK + 1), BASE_BLOCK + 1, 2, 3,
                         "0xfeed", amount0=1, amount1=2, liquidity=3)
    raw = convert_missing_event_to_raw_event(event, CHAIN_ID, NFT_ID)
    assert raw.token_id == NFT_ID
    assert raw.ordering_key == (BASE_BLOCK + 1, 2, 3)
    assert raw.liquidity == 3
    assert raw.block_timestamp == event.timestamp


def test_merge_prefers_indexer_copy():
    indexed = increase(BASE_BLOCK + 2, 10, amount1=100)
    reported = increase(BASE_BLOCK + 2, 10, amount1=999)
    extra = increase(BASE_BLOCK + 1, 5, amount1=50)
    merged = merge_events([indexed], [reported, extra])
    assert merged == [extra, indexed]


def test_confirmed_missing_events():
    indexed = [collect(BASE_BLOCK + 1, tx_hash="0xAAA", log_index=1)]
    pending = [missing(BASE_BLOCK + 1, tx_hash="0xaaa", log_index=1),
               missing(BASE_BLOCK + 2, tx_hash="0xbbb", log_index=1)]
    assert find_confirmed_missing_events(indexed, pending) == [("0xaaa", 1)]


def test_merge_drops_reported_copy_with_wrong_transaction_index():
    indexed = increase(BASE_BLOCK + 1, 100, amount1=1000, transaction_index=3, log_index=7, tx_hash="0xABC")
    reported = increase(BASE_BLOCK + 1, 100, amount1=1000, transaction_index=0, log_index=7, tx_hash="0xabc")
    assert merge_events([indexed], [reported]) == [indexed]
