"""Tests for the server document store."""

from datetime import datetime, timedelta, timezone

import pytest

from possync.models import Entity
from possync.server import Store


class FakeClock:
    """Manually advanced clock for deterministic timestamps."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):
    """Create an in-memory store."""
    s = Store(":memory:", clock=clock)
    s.connect()
    yield s
    s.close()


@pytest.fixture
def products(store):
    return store.repository(Entity.PRODUCT)


class TestStoreSchema:
    """Tests for schema initialization."""

    def test_connect_creates_tables(self, store):
        """Test that connect() creates the records and processed_ops tables."""
        tables = store.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        table_names = [t[0] for t in tables]

        assert "records" in table_names
        assert "processed_ops" in table_names

    def test_repository_is_cached(self, store):
        """Test the same repository is returned for an entity."""
        assert store.repository(Entity.SALE) is store.repository(Entity.SALE)


class TestRepositoryWrites:
    """Tests for creating and updating records."""

    def test_create(self, products, clock):
        """Test a created record starts at version 1 with metadata."""
        record = products.create({"name": "Cola", "price": 2.5}, modified_by="client_1")

        assert record.version == 1
        assert record.deleted is False
        assert record.last_modified_by == "client_1"
        assert record.created_at == clock.now
        assert record.updated_at == clock.now
        assert record.data == {"name": "Cola", "price": 2.5}

    def test_create_with_id(self, products):
        """Test a caller-chosen id is kept."""
        record = products.create({"name": "Cola"}, record_id="p1")

        assert record.id == "p1"
        assert products.find_by_id("p1") is not None

    def test_reserved_keys_not_stored_in_data(self, products):
        """Test bookkeeping keys never land in the JSON data."""
        record = products.create(
            {"name": "Cola", "version": 9, "deleted": True, "transition": "start"}
        )

        assert record.data == {"name": "Cola"}
        assert record.version == 1
        assert record.deleted is False

    def test_to_dict(self, products):
        """Test the flattened record shape."""
        record = products.create({"name": "Cola"}, modified_by="client_1", record_id="p1")

        data = record.to_dict()

        assert data["id"] == "p1"
        assert data["name"] == "Cola"
        assert data["version"] == 1
        assert data["deleted"] is False
        assert data["last_modified_by"] == "client_1"
        assert data["created_at"] == "2024-01-01T12:00:00.000000+00:00"

    def test_update_merges_and_bumps_version(self, products, clock):
        """Test updates merge fields, bump the version and the timestamp."""
        products.create({"name": "Cola", "price": 2.5}, record_id="p1")
        later = clock.advance(minutes=5)

        record = products.update("p1", {"price": 3.0}, modified_by="client_2")

        assert record.data == {"name": "Cola", "price": 3.0}
        assert record.version == 2
        assert record.updated_at == later
        assert record.created_at == later - timedelta(minutes=5)
        assert record.last_modified_by == "client_2"

    def test_update_without_version_bump(self, products):
        """Test bump_version=False keeps the version."""
        products.create({"name": "Cola"}, record_id="p1")

        record = products.update("p1", {"stock": 4}, bump_version=False)

        assert record.version == 1

    def test_update_missing(self, products):
        """Test updating a missing record returns None."""
        assert products.update("missing", {"price": 1}) is None

    def test_written_at_defaults_to_server_time(self, products, clock):
        """Test a create without a client time records the server time."""
        record = products.create({"name": "Cola"}, record_id="p1")

        assert record.written_at == clock.now

    def test_written_at_only_moves_forward(self, products, clock):
        """Test the last write time keeps the latest client time seen."""
        t1 = clock.now - timedelta(minutes=30)
        products.create({"name": "Cola"}, record_id="p1", written_at=t1)
        clock.advance(minutes=5)

        newer = products.update("p1", {"price": 3.0}, written_at=t1 + timedelta(minutes=10))
        older = products.update("p1", {"price": 4.0}, written_at=t1)

        assert newer.written_at == t1 + timedelta(minutes=10)
        assert older.written_at == t1 + timedelta(minutes=10)
        assert older.updated_at == clock.now

    def test_side_effect_update_keeps_written_at(self, products, clock):
        """Test an update without a client time leaves the last write time alone."""
        t1 = clock.now - timedelta(minutes=30)
        products.create({"name": "Cola", "stock": 5}, record_id="p1", written_at=t1)
        clock.advance(minutes=5)

        record = products.update("p1", {"stock": 3}, bump_version=False)

        assert record.written_at == t1
        assert record.updated_at == clock.now

    def test_soft_delete(self, products):
        """Test a soft-deleted record is hidden from default lookups."""
        products.create({"name": "Cola"}, record_id="p1")

        products.update("p1", {}, deleted=True)

        assert products.find_by_id("p1") is None
        deleted = products.find_by_id("p1", include_deleted=True)
        assert deleted.deleted is True
        assert deleted.version == 2


class TestRepositoryQueries:
    """Tests for lookups and watermark queries."""

    def test_find_by_key(self, products):
        """Test lookup by a data field skips deleted records."""
        products.create({"name": "Cola", "sku": "C-1"}, record_id="p1")
        products.create({"name": "Old Cola", "sku": "C-2"}, record_id="p2")
        products.update("p2", {}, deleted=True)

        assert products.find_by_key("sku", "C-1").id == "p1"
        assert products.find_by_key("sku", "C-2") is None

    def test_find_by_key_rejects_bad_field(self, products):
        """Test field names are validated before reaching SQL."""
        with pytest.raises(ValueError):
            products.find_by_key("sku') OR 1=1 --", "x")

    def test_find_many_ordered_and_inclusive(self, products, clock):
        """Test results are ordered by watermark and since is inclusive."""
        products.create({"name": "A"}, record_id="a")
        t1 = clock.advance(seconds=1)
        products.create({"name": "C"}, record_id="c")
        products.create({"name": "B"}, record_id="b")
        clock.advance(seconds=1)
        products.create({"name": "D"}, record_id="d")

        records = products.find_many(since=t1)

        assert [r.id for r in records] == ["b", "c", "d"]

    def test_find_many_limit_and_filters(self, products):
        """Test limit and data filters."""
        products.create({"name": "A", "category": "drinks"}, record_id="a")
        products.create({"name": "B", "category": "snacks"}, record_id="b")
        products.create({"name": "C", "category": "drinks"}, record_id="c")

        drinks = products.find_many(filters={"category": "drinks"})
        first = products.find_many(limit=1)

        assert [r.id for r in drinks] == ["a", "c"]
        assert len(first) == 1

    def test_find_many_excluding_deleted(self, products):
        """Test include_deleted=False hides tombstones."""
        products.create({"name": "A"}, record_id="a")
        products.create({"name": "B"}, record_id="b")
        products.update("b", {}, deleted=True)

        assert [r.id for r in products.find_many(include_deleted=False)] == ["a"]
        assert len(products.find_many()) == 2

    def test_find_many_rejects_bad_watermark(self, products):
        """Test only known watermark columns are accepted."""
        with pytest.raises(ValueError):
            products.find_many(watermark_field="deleted")

    def test_count_since(self, store, clock):
        """Test counting records created since a time."""
        sales = store.repository(Entity.SALE)
        sales.create({"total": 1})
        start = clock.advance(hours=1)
        sales.create({"total": 2})
        sales.create({"total": 3})

        assert sales.count_since("created_at", start) == 2


class TestStoreTransactions:
    """Tests for the unit-of-work primitive."""

    def test_commit(self, store, products):
        """Test a successful block is committed."""
        with store.transaction():
            products.create({"name": "A"}, record_id="a")

        assert products.find_by_id("a") is not None

    def test_rollback(self, store, products):
        """Test an exception undoes the whole block."""
        with pytest.raises(RuntimeError):
            with store.transaction():
                products.create({"name": "A"}, record_id="a")
                raise RuntimeError("boom")

        assert products.find_by_id("a") is None

    def test_nested_rollback_keeps_outer_work(self, store, products):
        """Test a failing inner block only undoes its own writes."""
        with store.transaction():
            products.create({"name": "A"}, record_id="a")
            with pytest.raises(RuntimeError):
                with store.transaction():
                    products.create({"name": "B"}, record_id="b")
                    raise RuntimeError("boom")

        assert products.find_by_id("a") is not None
        assert products.find_by_id("b") is None


class TestIdempotencyLog:
    """Tests for the processed operations log."""

    def test_record_and_find(self, store):
        """Test a recorded operation can be found by client and op id."""
        store.record_processed("client_1", "op-1", Entity.PRODUCT, "p1")

        seen = store.find_processed("client_1", "op-1")

        assert seen["entity"] == "product"
        assert seen["server_id"] == "p1"
        assert store.find_processed("client_2", "op-1") is None

    def test_purge(self, store, clock):
        """Test purging entries older than a cutoff."""
        store.record_processed("client_1", "old", Entity.SALE, "s1")
        cutoff = clock.advance(hours=25)
        store.record_processed("client_1", "new", Entity.SALE, "s2")

        assert store.purge_processed(cutoff) == 1
        assert store.find_processed("client_1", "old") is None
        assert store.find_processed("client_1", "new") is not None

    def test_get_stats(self, store, products):
        """Test statistics count active and deleted records."""
        products.create({"name": "A"}, record_id="a")
        products.create({"name": "B"}, record_id="b")
        products.update("b", {}, deleted=True)
        store.record_processed("client_1", "op-1", Entity.PRODUCT, "a")

        stats = store.get_stats()

        assert stats["entities"]["product"] == {"active": 1, "deleted": 1}
        assert stats["processed_ops"] == 1
