from datetime import timedelta
from decimal import Decimal

import pytest

from claim_records import ClaimNotFound, ClaimStateConflict
from extensions import db
from models_claims import CLAIM_CONFIRMED, CLAIM_FAILED, CLAIM_PENDING

from conftest import OTHER_WALLET, T0, WALLET


def _pending(store, wallet=WALLET, asset="BONE", amount="0.1"):
    claim = store.create(wallet, asset, Decimal(amount))
    db.session.commit()
    return claim.id


def test_create_is_pending_with_exact_amount(faucet):
    store = faucet["claims"]
    claim_id = _pending(store, amount="0.000000000000000001")
    claim = store.get(claim_id)
    assert claim.status == CLAIM_PENDING
    assert claim.amount == "0.000000000000000001"
    assert claim.tx_hash is None
    assert claim.created_at == T0


def test_confirm_sets_reference(faucet, clock):
    store = faucet["claims"]
    claim_id = _pending(store)
    clock.advance(seconds=5)
    store.transition_to_confirmed(claim_id, "0xabc", at=clock())
    db.session.commit()

    claim = store.get(claim_id)
    assert claim.status == CLAIM_CONFIRMED
    assert claim.tx_hash == "0xabc"
    assert claim.submitted_tx_hash == "0xabc"
    assert claim.confirmed_at == T0 + timedelta(seconds=5)


def test_fail_records_reason_without_reference(faucet):
    store = faucet["claims"]
    claim_id = _pending(store)
    store.record_submission(claim_id, "0xdead")
    store.transition_to_failed(claim_id, "no confirmation within 60s")
    db.session.commit()

    claim = store.get(claim_id)
    assert claim.status == CLAIM_FAILED
    assert claim.tx_hash is None
    assert claim.submitted_tx_hash == "0xdead"
    assert claim.failure_reason == "no confirmation within 60s"


def test_terminal_states_are_final(faucet):
    store = faucet["claims"]
    confirmed = _pending(store)
    store.transition_to_confirmed(confirmed, "0x01")
    db.session.commit()

    with pytest.raises(ClaimStateConflict) as exc:
        store.transition_to_failed(confirmed, "late failure")
    assert exc.value.status == CLAIM_CONFIRMED
    assert exc.value.target == CLAIM_FAILED
    db.session.rollback()
    assert store.get(confirmed).tx_hash == "0x01"

    failed = _pending(store)
    store.transition_to_failed(failed, "boom")
    db.session.commit()
    with pytest.raises(ClaimStateConflict):
        store.transition_to_confirmed(failed, "0x02")
    db.session.rollback()
    assert store.get(failed).status == CLAIM_FAILED


def test_unknown_claim(faucet):
    with pytest.raises(ClaimNotFound):
        faucet["claims"].transition_to_confirmed(999, "0x01")


def test_late_upgrade_requires_matching_hash(faucet):
    store = faucet["claims"]
    claim_id = _pending(store)
    store.transition_to_failed(claim_id, "timeout", submitted_tx_hash="0xaaa")
    db.session.commit()

    assert not store.upgrade_late_confirmation(claim_id, "0xbbb")
    assert store.upgrade_late_confirmation(claim_id, "0xaaa")
    db.session.commit()
    assert store.get(claim_id).status == CLAIM_CONFIRMED
    assert store.get(claim_id).tx_hash == "0xaaa"

    # Already upgraded: nothing left to do.
    assert not store.upgrade_late_confirmation(claim_id, "0xaaa")


def test_history_is_newest_first_and_capped(faucet, clock):
    store = faucet["claims"]
    ids = []
    for _ in range(3):
        ids.append(_pending(store))
        clock.advance(minutes=1)
    _pending(store, wallet=OTHER_WALLET)

    history = store.history_for(WALLET)
    assert [c.id for c in history] == list(reversed(ids))
    assert [c.id for c in store.history_for(WALLET, limit=2)] == [ids[2], ids[1]]
    assert [c.id for c in store.history_for(WALLET, limit=0)] == [ids[2]]
    assert len(store.history_for(WALLET, limit=-5)) == 1
    assert len(store.history_for(WALLET, limit=500)) == 3
    assert store.count_for(WALLET) == 3
    assert store.count_for(WALLET, "SHIB") == 0


def test_reconciliation_queries(faucet, clock):
    store = faucet["claims"]
    old = _pending(store)
    clock.advance(minutes=30)
    fresh = _pending(store, asset="SHIB")

    stale = store.stale_pending(clock() - timedelta(minutes=15))
    assert [c.id for c in stale] == [old]

    store.transition_to_failed(fresh, "timeout", submitted_tx_hash="0xf00")
    db.session.commit()
    assert [c.id for c in store.failed_with_submission(T0)] == [fresh]


def test_cooldown_gaps(faucet):
    store = faucet["claims"]
    cooldowns = faucet["cooldowns"]
    claim_id = _pending(store)
    store.transition_to_confirmed(claim_id, "0x01", at=T0)
    db.session.commit()

    assert store.cooldown_gaps(T0 - timedelta(hours=1)) == [(WALLET, "BONE", T0)]

    cooldowns.mark_claimed(WALLET, "BONE", at=T0)
    db.session.commit()
    assert store.cooldown_gaps(T0 - timedelta(hours=1)) == []


def test_events_are_recorded(faucet):
    store = faucet["claims"]
    store.record_event(WALLET, "BONE", "cooldown_active", "remaining 7h 0m")
    events = store.events_for(WALLET)
    assert len(events) == 1
    assert events[0].type == "cooldown_active"
    assert events[0].message == "remaining 7h 0m"
