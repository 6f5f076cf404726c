"""Tests for the in-process fallback store and the dual-shape durable store."""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, func, insert, select
from sqlalchemy.exc import SQLAlchemyError

from errors import DurableReadFailed, DurableWriteFailed
from models_push import document_table, structured_table
from stores import DocumentShape, DurableStore, MemoryStore, StorageOutcome, StructuredShape
from subscriptions import SubscriptionDescriptor, parse_subscription

from conftest import make_payload


class _SilentFailureShape(DocumentShape):
    """Backend errors that carry no message at all."""

    def write(self, conn, sub):
        raise SQLAlchemyError("")

    def read_active(self, conn):
        raise SQLAlchemyError("")


def _count(engine, table):
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar_one()


class TestMemoryStore:
    def test_put_overwrites_by_endpoint(self, memory):
        memory.put(SubscriptionDescriptor("e", "a1", "p1"))
        memory.put(SubscriptionDescriptor("e", "a2", "p2"))
        assert len(memory) == 1
        assert memory.get("e").auth_key == "a2"

    def test_discard(self, memory):
        memory.put(SubscriptionDescriptor("e", "a", "p"))
        memory.discard("e")
        memory.discard("missing")
        assert memory.values() == []

    def test_deactivate(self, memory):
        memory.put(SubscriptionDescriptor("e", "a", "p"))
        assert memory.deactivate("e") is True
        assert memory.get("e").is_active is False
        assert memory.deactivate("e") is False
        assert memory.deactivate("missing") is False

    def test_values_is_a_snapshot(self, memory):
        memory.put(SubscriptionDescriptor("e", "a", "p"))
        snapshot = memory.values()
        memory.put(SubscriptionDescriptor("f", "a", "p"))
        assert len(snapshot) == 1

    def test_concurrent_writers_and_readers(self, memory):
        errors = []

        def writer(worker):
            for i in range(200):
                memory.put(SubscriptionDescriptor(f"w{worker}-{i % 50}", "a", "p"))

        def reader():
            try:
                for _ in range(200):
                    for sub in memory.values():
                        assert sub.endpoint
            except Exception as e:  # surfaced below
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(w,)) for w in range(4)]
        threads += [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(memory) == 4 * 50


class TestDurableStoreDocumentShape:
    def test_write_uses_document_shape(self, document_engine):
        store = DurableStore(document_engine)
        outcome = store.write(parse_subscription(make_payload(1, userId="u-1")))
        assert outcome is StorageOutcome.DURABLE_DOCUMENT

        with document_engine.connect() as conn:
            row = conn.execute(select(document_table)).one()
        assert row.subscription["endpoint"].endswith("device-1")
        assert row.subscription["keys"] == {"p256dh": "p256dh-1", "auth": "auth-1"}
        assert row.user_id == "u-1"
        assert row.is_active is True

    def test_rewrite_replaces_row(self, document_engine):
        store = DurableStore(document_engine)
        store.write(parse_subscription(make_payload(1)))
        store.write(parse_subscription(make_payload(1, keys={"p256dh": "new-p", "auth": "new-a"})))
        store.write(parse_subscription(make_payload(2)))

        assert _count(document_engine, document_table) == 2
        subs = {s.endpoint: s for s in store.list_active()}
        assert subs[make_payload(1)["endpoint"]].auth_key == "new-a"

    def test_list_active_skips_inactive_rows(self, document_engine):
        store = DurableStore(document_engine)
        now = datetime.now(timezone.utc)
        with document_engine.begin() as conn:
            conn.execute(insert(document_table).values(subscription=make_payload(1), is_active=False, updated_at=now))
            conn.execute(insert(document_table).values(subscription=make_payload(2), is_active=True, updated_at=now))
        assert [s.endpoint for s in store.list_active()] == [make_payload(2)["endpoint"]]

    def test_list_active_tolerates_flat_and_broken_documents(self, document_engine):
        store = DurableStore(document_engine)
        now = datetime.now(timezone.utc)
        flat = {"endpoint": "https://push.example/flat", "p256dh_key": "p", "auth_key": "a"}
        with document_engine.begin() as conn:
            conn.execute(insert(document_table).values(subscription=flat, is_active=True, updated_at=now))
            conn.execute(insert(document_table).values(subscription={"keys": {}}, is_active=True, updated_at=now))
        subs = store.list_active()
        assert [(s.endpoint, s.auth_key, s.p256dh_key) for s in subs] == [("https://push.example/flat", "a", "p")]

    def test_list_active_skips_malformed_json(self, document_engine):
        store = DurableStore(document_engine)
        store.write(parse_subscription(make_payload(1)))
        store.write(parse_subscription(make_payload(2)))
        with document_engine.begin() as conn:
            conn.exec_driver_sql(
                "UPDATE push_subscriptions SET subscription = ? WHERE id = 1", ("{not json",)
            )
        assert [s.endpoint for s in store.list_active()] == [make_payload(2)["endpoint"]]

    def test_deactivate(self, document_engine):
        store = DurableStore(document_engine)
        store.write(parse_subscription(make_payload(1)))
        assert store.deactivate(make_payload(1)["endpoint"]) == 1
        assert store.deactivate(make_payload(1)["endpoint"]) == 0
        assert store.list_active() == []


class TestDurableStoreStructuredShape:
    def test_falls_through_to_structured_shape(self, structured_engine):
        store = DurableStore(structured_engine)
        outcome = store.write(parse_subscription(make_payload(1)))
        assert outcome is StorageOutcome.DURABLE_STRUCTURED

        with structured_engine.connect() as conn:
            row = conn.execute(select(structured_table)).one()
        assert row.endpoint.endswith("device-1")
        assert (row.p256dh_key, row.auth_key) == ("p256dh-1", "auth-1")
        assert row.user_id is None

    def test_rewrite_replaces_row(self, structured_engine):
        store = DurableStore(structured_engine)
        store.write(parse_subscription(make_payload(1)))
        store.write(parse_subscription(make_payload(1, keys={"p256dh": "new-p", "auth": "new-a"})))
        assert _count(structured_engine, structured_table) == 1
        [sub] = store.list_active()
        assert (sub.auth_key, sub.p256dh_key) == ("new-a", "new-p")

    def test_owner_written_when_present(self, structured_engine):
        store = DurableStore(structured_engine)
        store.write(parse_subscription(make_payload(1, userId="u-7")))
        with structured_engine.connect() as conn:
            assert conn.execute(select(structured_table.c.user_id)).scalar_one() == "u-7"
        [sub] = store.list_active()
        assert sub.owner_id == "u-7"

    def test_reads_table_without_user_column(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'legacy.db'}")
        with engine.begin() as conn:
            conn.exec_driver_sql(
                "CREATE TABLE push_subscriptions ("
                "id INTEGER PRIMARY KEY, endpoint TEXT, p256dh_key TEXT, auth_key TEXT, "
                "is_active BOOLEAN NOT NULL, updated_at DATETIME NOT NULL)"
            )
        store = DurableStore(engine)
        assert store.write(parse_subscription(make_payload(1))) is StorageOutcome.DURABLE_STRUCTURED
        [sub] = store.list_active()
        assert sub.endpoint == make_payload(1)["endpoint"]
        assert sub.owner_id is None
        engine.dispose()

    def test_deactivate(self, structured_engine):
        store = DurableStore(structured_engine)
        store.write(parse_subscription(make_payload(1)))
        assert store.deactivate(make_payload(1)["endpoint"]) == 1
        assert store.list_active() == []


class TestDurableStoreFailures:
    def test_write_fails_when_no_shape_fits(self, tableless_engine):
        store = DurableStore(tableless_engine)
        with pytest.raises(DurableWriteFailed) as exc:
            store.write(parse_subscription(make_payload(1)))
        assert len(exc.value.causes) == 2

    def test_unreachable_read_fails(self, unreachable_engine):
        store = DurableStore(unreachable_engine)
        with pytest.raises(DurableReadFailed) as exc:
            store.list_active()
        assert len(exc.value.causes) == 2

    def test_unreachable_deactivate_fails(self, unreachable_engine):
        with pytest.raises(DurableWriteFailed):
            DurableStore(unreachable_engine).deactivate("https://push.example/x")

    def test_create_tables_pins_document_shape(self, tableless_engine):
        store = DurableStore(tableless_engine)
        store.create_tables()
        store.create_tables()
        assert store.write(parse_subscription(make_payload(1))) is StorageOutcome.DURABLE_DOCUMENT

    def test_error_without_message(self, document_engine):
        store = DurableStore(document_engine, shapes=(_SilentFailureShape(),))
        with pytest.raises(DurableWriteFailed):
            store.write(parse_subscription(make_payload(1)))
        with pytest.raises(DurableReadFailed):
            store.list_active()

    def test_custom_shape_order(self, structured_engine):
        store = DurableStore(structured_engine, shapes=(StructuredShape(), DocumentShape()))
        assert store.write(parse_subscription(make_payload(1))) is StorageOutcome.DURABLE_STRUCTURED

    def test_rows_come_back_oldest_first(self, structured_engine):
        store = DurableStore(structured_engine)
        t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        with structured_engine.begin() as conn:
            conn.execute(insert(structured_table).values(
                endpoint="https://push.example/a", p256dh_key="p", auth_key="new",
                is_active=True, updated_at=t0 + timedelta(hours=1),
            ))
            conn.execute(insert(structured_table).values(
                endpoint="https://push.example/b", p256dh_key="p", auth_key="b",
                is_active=True, updated_at=t0,
            ))
        subs = store.list_active()
        assert [s.endpoint for s in subs] == ["https://push.example/b", "https://push.example/a"]
