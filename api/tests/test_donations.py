import pytest
from xrpl.wallet import Wallet

from conftest import DONOR, TREASURY, make_harness, run, seed_project
from xrpl_donations.core import donations
from xrpl_donations.core.check_id import generate_check_id
from xrpl_donations.core.errors import (
    InvalidInput,
    LedgerQueryFailed,
    NotFound,
    ProviderUnavailable,
    RateUnavailable,
)
from xrpl_donations.core.xaman import Cancelled, PushEvent, Signed
from xrpl_donations.core.xrpl import decode_memo_data


def create(harness, amount=25.5, subject_id=None, project_id="proj-1"):
    return run(harness.services.donations.create_request(project_id, amount, subject_id))


def stored(harness, request_id):
    return run(harness.store.get("donation_requests", request_id))


def sign(harness, handle, txid="TX1", account=DONOR):
    request = stored(harness, handle.request.id)
    harness.ledger.add_payment(txid, request, account=account)
    harness.provider.statuses[handle.payload.uuid] = Signed(
        uuid=handle.payload.uuid, account=account, txid=txid
    )
    return request


def link_wallet(harness, subject_id="user-1", address=DONOR):
    run(
        harness.store.put(
            "wallets",
            f"w-{subject_id}",
            {"subject_id": subject_id, "address": address, "status": "linked", "is_primary": True},
        )
    )


def test_create_request_awaits_signature(harness):
    seed_project(harness.store)
    handle = create(harness)

    assert handle.request.status == "awaiting_signature"
    assert handle.request.provider_payload_id == handle.payload.uuid
    assert handle.quote.price.rlusd == 2.5
    assert handle.warnings == []

    txjson = harness.provider.created[0]["txjson"]
    record = stored(harness, handle.request.id)
    assert txjson["TransactionType"] == "Payment"
    assert txjson["Destination"] == TREASURY
    assert txjson["Amount"] == "25500000"
    assert txjson["DestinationTag"] == record["destination_tag"]
    assert decode_memo_data(txjson["Memos"][0]) == record["verification_hash"]
    assert harness.provider.created[0]["options"]["expire"] == 10


@pytest.mark.parametrize("amount", [0, -1, 10_001, "1.0000001", "abc"])
def test_create_request_rejects_bad_amounts(harness, amount):
    seed_project(harness.store)
    with pytest.raises(InvalidInput):
        create(harness, amount=amount)
    assert harness.store.rows("donation_requests") == []


def test_create_request_unknown_project(harness):
    with pytest.raises(NotFound):
        create(harness, project_id="missing")


def test_quote_failure_blocks_creation(clock, store, ledger, provider):
    harness = make_harness(clock, store, ledger, provider, rate=0)
    seed_project(store)
    with pytest.raises(RateUnavailable):
        create(harness)
    assert store.rows("donation_requests") == []


def test_create_without_quote_skips_rate(harness):
    seed_project(harness.store)
    handle = run(
        harness.services.donations.create_request("proj-1", 5, include_quote=False)
    )
    assert handle.quote is None
    assert harness.fetches == []


def test_ineligible_donor_gets_warnings_but_request(harness):
    seed_project(harness.store)
    link_wallet(harness)

    handle = create(harness, subject_id="user-1")
    assert handle.request.status == "awaiting_signature"
    assert not handle.eligibility.can_donate
    assert any("trustline" in w for w in handle.warnings)
    assert any("XRP balance" in w for w in handle.warnings)


def test_eligibility_failure_is_a_warning(harness):
    seed_project(harness.store)
    link_wallet(harness)
    harness.ledger.failing.add("account_info")

    handle = create(harness, subject_id="user-1")
    assert handle.eligibility is None
    assert handle.warnings == ["Eligibility check failed (xrp_balance); donation may not succeed"]


def test_destination_tags_are_unique_among_open_requests(harness, monkeypatch):
    seed_project(harness.store)
    draws = iter([41, 41, 42])
    monkeypatch.setattr(donations.secrets, "randbelow", lambda n: next(draws))

    first = create(harness)
    second = create(harness)
    assert first.request.destination_tag == 42
    assert second.request.destination_tag == 43


def test_provider_failure_marks_request_failed(harness):
    seed_project(harness.store)
    harness.provider.fail_create = True
    with pytest.raises(ProviderUnavailable):
        create(harness)
    (record,) = harness.store.rows("donation_requests")
    assert record["status"] == "failed"
    assert "503" in record["failure_reason"]


def test_end_to_end_settlement(harness):
    seed_project(harness.store)
    handle = create(harness)
    sign(harness, handle)

    status = run(harness.services.donations.reconcile(handle.request.id))
    assert status.status == "settled"
    assert status.settled_tx_hash == "TX1"
    assert status.donor_address == DONOR

    (entry,) = harness.store.rows("donation_records")
    assert entry["request_id"] == handle.request.id
    assert entry["amount"] == 25.5
    assert run(harness.services.projects.total_donations_xrp("proj-1")) == 25.5


def test_duplicate_signed_events_change_nothing(harness):
    seed_project(harness.store)
    handle = create(harness)
    sign(harness, handle)
    engine = harness.services.donations
    coordinator = harness.services.coordinator

    run(engine.reconcile(handle.request.id))
    settled = stored(harness, handle.request.id)
    writes = len(harness.store.writes)

    harness.clock.advance(seconds=5)
    run(coordinator.handle_push_event(PushEvent(payload_id=handle.payload.uuid, signed=True)))
    signed = Signed(uuid=handle.payload.uuid, account=DONOR, txid="TX1")
    run(engine.finalize_on_completion(handle.request.id, signed))

    assert stored(harness, handle.request.id) == settled
    assert len(harness.store.writes) == writes
    assert len(harness.store.rows("donation_records")) == 1


def test_verification_mismatch_fails_request(harness):
    seed_project(harness.store)
    handle = create(harness)
    request = sign(harness, handle)
    harness.ledger.add_payment("TX1", request, DestinationTag=request["destination_tag"] + 1)

    status = run(harness.services.donations.reconcile(handle.request.id))
    assert status.status == "failed"
    assert "destination tag" in status.failure_reason
    assert harness.store.rows("donation_records") == []


def test_missing_memo_fails_request(harness):
    seed_project(harness.store)
    handle = create(harness)
    request = sign(harness, handle)
    harness.ledger.add_payment("TX1", request, Memos=[])

    status = run(harness.services.donations.reconcile(handle.request.id))
    assert status.failure_reason == "verification memo missing"


def test_unvalidated_transaction_is_retryable(harness):
    seed_project(harness.store)
    handle = create(harness)
    sign(harness, handle)
    harness.ledger.transactions.clear()

    with pytest.raises(LedgerQueryFailed) as excinfo:
        run(harness.services.donations.reconcile(handle.request.id))
    assert excinfo.value.retryable
    assert stored(harness, handle.request.id)["status"] == "awaiting_signature"


def test_verification_can_be_disabled(clock, store, ledger, provider):
    harness = make_harness(clock, store, ledger, provider, verify_transactions=False)
    seed_project(store)
    handle = create(harness)
    provider.statuses[handle.payload.uuid] = Signed(uuid=handle.payload.uuid, account=DONOR, txid="TX9")

    assert run(harness.services.donations.reconcile(handle.request.id)).status == "settled"


def test_signed_without_txid_is_rejected(harness):
    seed_project(harness.store)
    handle = create(harness)
    with pytest.raises(InvalidInput):
        run(
            harness.services.donations.finalize_on_completion(
                handle.request.id, Signed(uuid=handle.payload.uuid, account=DONOR, txid=None)
            )
        )


def test_expiry_is_reported_on_read_without_writing(harness):
    seed_project(harness.store)
    handle = create(harness)
    harness.clock.advance(minutes=11)

    status = run(harness.services.donations.get_status(handle.request.id))
    assert status.status == "expired"
    assert stored(harness, handle.request.id)["status"] == "awaiting_signature"


def test_user_rejection_fails_request(harness):
    seed_project(harness.store)
    handle = create(harness)
    harness.provider.statuses[handle.payload.uuid] = Cancelled(uuid=handle.payload.uuid, reason="rejected")

    assert run(harness.services.donations.reconcile(handle.request.id)).status == "failed"


def test_get_status_unknown_request(harness):
    with pytest.raises(NotFound):
        run(harness.services.donations.get_status("nope"))


def test_settlement_issues_reward_check(clock, store, ledger, provider):
    issuer = Wallet.create()
    harness = make_harness(clock, store, ledger, provider, issuer_wallet=issuer)
    seed_project(store, issuer=issuer.address)
    handle = create(harness, amount=10)
    sign(harness, handle)

    status = run(harness.services.donations.reconcile(handle.request.id))
    assert status.status == "settled"
    assert status.reward_status == "issued"
    assert status.check_id == generate_check_id(issuer.address, 7)

    (tx,) = ledger.submitted
    assert tx.destination == DONOR
    assert tx.send_max.issuer == issuer.address
    assert float(tx.send_max.value) > 0


def test_reward_failure_keeps_donation_settled(clock, store, ledger, provider):
    issuer = Wallet.create()
    harness = make_harness(clock, store, ledger, provider, issuer_wallet=issuer)
    seed_project(store, issuer=issuer.address)
    handle = create(harness, amount=10)
    sign(harness, handle)
    ledger.failing.add("submit")

    status = run(harness.services.donations.reconcile(handle.request.id))
    assert status.status == "settled"
    assert status.reward_status == "failed"
    assert status.check_id is None


def test_failed_donation_record_write_is_repaired(harness):
    seed_project(harness.store)
    handle = create(harness, amount=10)
    sign(harness, handle)
    harness.store.fail_puts.add("donation_records")
    engine = harness.services.donations

    with pytest.raises(ConnectionError):
        run(engine.reconcile(handle.request.id))
    assert stored(harness, handle.request.id)["status"] == "settled"
    assert run(harness.services.projects.total_donations_xrp("proj-1")) == 0.0

    status = run(engine.reconcile(handle.request.id))
    assert status.status == "settled"
    assert run(harness.services.projects.total_donations_xrp("proj-1")) == 10.0
    assert stored(harness, handle.request.id)["effects_applied"]


def test_repaired_settlement_issues_reward_once(clock, store, ledger, provider):
    issuer = Wallet.create()
    harness = make_harness(clock, store, ledger, provider, issuer_wallet=issuer)
    seed_project(store, issuer=issuer.address)
    handle = create(harness, amount=10)
    sign(harness, handle)
    store.fail_puts.add("donation_records")
    engine = harness.services.donations

    with pytest.raises(ConnectionError):
        run(engine.reconcile(handle.request.id))
    assert ledger.submitted == []
    assert stored(harness, handle.request.id)["reward_status"] == "pending"

    assert run(engine.reconcile(handle.request.id)).reward_status == "issued"
    run(store.update_merge("donation_requests", handle.request.id, {"effects_applied": False}))
    run(engine.reconcile(handle.request.id))

    assert len(ledger.submitted) == 1
    assert len(store.rows("donation_records")) == 1
