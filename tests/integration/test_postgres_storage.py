from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from mail_relay.ledger import CreditLedger, MappingLedger, Settlement
from mail_relay.storage.postgres import PostgresRelayStorage


def test_concurrent_inserts_with_same_message_id_yield_one_mapping(
    pg_storage: PostgresRelayStorage,
) -> None:
    def create(_: int) -> tuple[int, bool]:
        mapping, created = pg_storage.create_mapping(
            original_message_id="dup@example.com",
            original_sender="alice@example.com",
            workflow="research",
        )
        return mapping.mapping_id, created

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(create, range(8)))

    assert len({mapping_id for mapping_id, _ in results}) == 1
    assert sum(1 for _, created in results if created) == 1


def test_concurrent_debits_never_overdraw(pg_storage: PostgresRelayStorage) -> None:
    user = pg_storage.create_user("alice@example.com", credits=10, is_approved=True)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(
            pool.map(
                lambda _: pg_storage.debit_credits(user.user_id, 3, reason="Task: research"),
                range(8),
            )
        )

    assert sum(1 for r in results if r.applied) == 3
    assert pg_storage.get_user(user.user_id).credits == 1
    assert CreditLedger(pg_storage).balance_matches_history(user.user_id)


def test_concurrent_settlements_charge_once(pg_storage: PostgresRelayStorage) -> None:
    user = pg_storage.create_user("alice@example.com", credits=10, is_approved=True)
    mapping, _ = pg_storage.create_mapping(
        original_message_id="orig@example.com",
        original_sender=user.address,
        workflow="research",
    )

    def settle(_: int) -> bool:
        return pg_storage.settle_mapping(
            mapping.mapping_id, user_id=user.user_id, amount=10, reason="Task: research"
        ).applied

    with ThreadPoolExecutor(max_workers=6) as pool:
        applied = list(pool.map(settle, range(6)))

    assert applied.count(True) == 1
    stored = pg_storage.get_mapping(mapping.mapping_id)
    assert stored.status == "completed"
    assert stored.credits_charged == 10
    assert pg_storage.get_user(user.user_id).credits == 0
    assert [t.credits_delta for t in pg_storage.list_transactions(user.user_id)] == [10, -10]


def test_settlement_round_trip_through_ledgers(pg_storage: PostgresRelayStorage) -> None:
    user = pg_storage.create_user("bob@example.com", credits=5, is_approved=True)
    workflow = pg_storage.upsert_workflow(
        "summarize", credits_per_task=5, execution_address="summarize@backend.test"
    )
    mappings = MappingLedger(pg_storage)
    mapping, created = mappings.create("<m1@example.com>", user.address, workflow.name)
    mappings.attach_external_id(mapping, "sg-1")

    assert created is True
    assert mappings.find_by_correlation_id("sg-1").mapping_id == mapping.mapping_id
    assert mappings.mark_acknowledged(mapping) is True

    result = Settlement(mappings).run(
        mapping.mapping_id, act=lambda _: None, user_id=user.user_id, amount=5, reason="Task: summarize"
    )

    assert result.applied and result.charged == 5
    assert pg_storage.get_user(user.user_id).credits == 0


def test_private_workflow_allowlist(pg_storage: PostgresRelayStorage) -> None:
    workflow = pg_storage.upsert_workflow(
        "vault", credits_per_task=1, visibility="private", execution_address="v@backend.test"
    )
    pg_storage.add_approved_sender(workflow.workflow_id, "Carol@Example.com")
    pg_storage.add_approved_sender(workflow.workflow_id, "carol@example.com")

    assert pg_storage.is_approved_sender(workflow.workflow_id, "carol@example.com")
    assert not pg_storage.is_approved_sender(workflow.workflow_id, "dave@example.com")
    assert pg_storage.ping() is True
