"""
Unit tests for the consistency propagator.

Tests cover:
- Fast exit when the cached name is unchanged
- Library and collection renames reaching every child
- Chunking by 25 and partial chunk failures
- Collection removal orphaning members
- Parent sort key repair
"""

import math

import pytest

from alexandria.catalog_sync import keys
from alexandria.catalog_sync.model import EntityKind
from alexandria.catalog_sync.propagate import ConsistencyPropagator
from alexandria.catalog_sync.store import InMemoryPrimaryStore, UpdateStatement
from tests.records import collection_image, item_image, library_image, modify, remove


def seed_library(store, count, owner_id="u1", library_id="l1", name="Home"):
    store.put_item(library_image(owner_id, library_id, name))
    for n in range(count):
        store.put_item(item_image(owner_id, library_id, f"i{n:03d}", f"Title {n:03d}", library_name=name))


class TestUpdateStatement:
    """Tests for PartiQL rendering."""

    def test_set_and_remove(self):
        """SET and REMOVE clauses target the full key."""
        statement = UpdateStatement(
            pk="owner#u1",
            sk="library#l1#item#i1",
            set={"CollectionName": "Saga", "GSI1SK": "item#Saga#00001#Dune"},
            remove=("Order",),
        )
        text, params = statement.to_partiql("alexandria")

        assert text == (
            'UPDATE "alexandria" SET "CollectionName"=? SET "GSI1SK"=? '
            'REMOVE "Order" WHERE "PK"=? AND "SK"=?'
        )
        assert params == ["Saga", "item#Saga#00001#Dune", "owner#u1", "library#l1#item#i1"]


class TestLibraryRename:
    """Tests for MODIFY LIBRARY propagation."""

    @pytest.fixture
    def store(self):
        return InMemoryPrimaryStore()

    @pytest.mark.asyncio
    async def test_unchanged_name_is_a_fast_exit(self, store):
        """No query and no write when the name did not change."""
        seed_library(store, 3)
        propagator = ConsistencyPropagator(store)
        old = library_image("u1", "l1", "Home")
        new = dict(old, Description="updated")

        result = await propagator.process_batch([modify(old, new)])

        assert result.reports == []
        assert store.query_count == 0
        assert store.executed_batches == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [1, 25, 26, 60])
    async def test_rename_reaches_every_child(self, store, count):
        """Exactly ceil(N/25) chunks; every child carries the new name."""
        seed_library(store, count)
        propagator = ConsistencyPropagator(store)

        result = await propagator.process_batch(
            [modify(library_image("u1", "l1", "Home"), library_image("u1", "l1", "Office"))]
        )

        report = result.reports[0]
        assert report.parent_kind is EntityKind.LIBRARY
        assert report.statements == count
        assert report.chunks == math.ceil(count / 25)
        assert len(store.executed_batches) == math.ceil(count / 25)
        assert all(len(batch) <= 25 for batch in store.executed_batches)
        assert report.complete

        for n in range(count):
            item = store.get_item("owner#u1", f"library#l1#item#i{n:03d}")
            assert item["LibraryName"] == "Office"
            assert item["GSI1SK"] == keys.child_sort_key(f"Title {n:03d}")

    @pytest.mark.asyncio
    async def test_rename_keeps_collection_sort_key(self, store):
        """Members of a collection keep their collection position."""
        store.put_item(library_image("u1", "l1", "Home"))
        store.put_item(
            item_image("u1", "l1", "i1", "Dune", collection_id="c1", collection_name="Saga", order=2)
        )
        propagator = ConsistencyPropagator(store)

        await propagator.process_batch(
            [modify(library_image("u1", "l1", "Home"), library_image("u1", "l1", "Office"))]
        )

        item = store.get_item("owner#u1", "library#l1#item#i1")
        assert item["GSI1SK"] == "item#Saga#00002#Dune"

    @pytest.mark.asyncio
    async def test_other_libraries_untouched(self, store):
        """Only children of the renamed library are updated."""
        seed_library(store, 2)
        seed_library(store, 2, library_id="l2", name="Other")
        propagator = ConsistencyPropagator(store)

        await propagator.process_batch(
            [modify(library_image("u1", "l1", "Home"), library_image("u1", "l1", "Office"))]
        )

        assert store.get_item("owner#u1", "library#l2#item#i000")["LibraryName"] == "Other"

    @pytest.mark.asyncio
    async def test_failed_chunk_does_not_stop_others(self, store):
        """A failing chunk is reported and the remaining chunks still run."""
        seed_library(store, 60)
        store.fail_batches = {0}
        propagator = ConsistencyPropagator(store, max_concurrent_chunks=1)

        result = await propagator.process_batch(
            [modify(library_image("u1", "l1", "Home"), library_image("u1", "l1", "Office"))]
        )

        report = result.reports[0]
        assert len(store.executed_batches) == 3
        assert report.failed_chunks == 1
        assert report.failed_statements == 25
        assert not report.complete
        assert result.failed_statements == 25
        renamed = [
            store.get_item("owner#u1", f"library#l1#item#i{n:03d}")["LibraryName"]
            for n in range(60)
        ]
        assert renamed.count("Office") == 35

    @pytest.mark.asyncio
    async def test_query_failure_aborts_rename(self, store):
        """A failed child query writes nothing and does not raise."""
        seed_library(store, 3)
        store.fail_queries = True
        propagator = ConsistencyPropagator(store)

        result = await propagator.process_batch(
            [modify(library_image("u1", "l1", "Home"), library_image("u1", "l1", "Office"))]
        )

        assert result.reports == []
        assert store.executed_batches == []

    @pytest.mark.asyncio
    async def test_stale_parent_sort_key_repaired(self, store):
        """The library's own GSI1SK is fixed when the API left it stale."""
        seed_library(store, 1)
        propagator = ConsistencyPropagator(store)
        new = library_image("u1", "l1", "Office", gsi1sk="library#Home")

        await propagator.process_batch([modify(library_image("u1", "l1", "Home"), new)])

        assert store.sort_key_updates == [("owner#u1", "library#l1", "library#Office")]
        assert store.get_item("owner#u1", "library#l1")["GSI1SK"] == "library#Office"

    @pytest.mark.asyncio
    async def test_fresh_parent_sort_key_left_alone(self, store):
        """No repair when the API already updated GSI1SK."""
        seed_library(store, 1)
        propagator = ConsistencyPropagator(store)

        await propagator.process_batch(
            [modify(library_image("u1", "l1", "Home"), library_image("u1", "l1", "Office"))]
        )

        assert store.sort_key_updates == []

    @pytest.mark.asyncio
    async def test_library_without_children(self, store):
        """A rename of an empty library writes nothing."""
        seed_library(store, 0)
        propagator = ConsistencyPropagator(store)

        result = await propagator.process_batch(
            [modify(library_image("u1", "l1", "Home"), library_image("u1", "l1", "Office"))]
        )

        assert result.reports[0].statements == 0
        assert store.executed_batches == []


class TestCollectionPropagation:
    """Tests for collection rename and removal."""

    @pytest.fixture
    def store(self):
        store = InMemoryPrimaryStore()
        store.put_item(library_image("u1", "l1", "Home"))
        store.put_item(collection_image("u1", "l1", "c1", "Saga"))
        store.put_item(
            item_image("u1", "l1", "i1", "Dune", collection_id="c1", collection_name="Saga", order=1)
        )
        store.put_item(
            item_image("u1", "l1", "i2", "Messiah", collection_id="c1", collection_name="Saga", order=2)
        )
        store.put_item(item_image("u1", "l1", "i3", "Solo"))
        return store

    @pytest.mark.asyncio
    async def test_rename_updates_members(self, store):
        """Members get the new name and a re-sorted GSI1SK."""
        propagator = ConsistencyPropagator(store)

        result = await propagator.process_batch(
            [
                modify(
                    collection_image("u1", "l1", "c1", "Saga"),
                    collection_image("u1", "l1", "c1", "Dune Saga"),
                )
            ]
        )

        assert result.reports[0].statements == 2
        first = store.get_item("owner#u1", "library#l1#item#i1")
        assert first["CollectionName"] == "Dune Saga"
        assert first["GSI1SK"] == "item#Dune Saga#00001#Dune"
        assert store.get_item("owner#u1", "library#l1#item#i2")["GSI1SK"] == (
            "item#Dune Saga#00002#Messiah"
        )
        assert "CollectionName" not in store.get_item("owner#u1", "library#l1#item#i3")

    @pytest.mark.asyncio
    async def test_rename_repairs_collection_sort_key(self, store):
        """The collection's own GSI1SK follows its name."""
        propagator = ConsistencyPropagator(store)
        new = collection_image("u1", "l1", "c1", "Dune Saga", gsi1sk="collection#Saga")

        await propagator.process_batch([modify(collection_image("u1", "l1", "c1", "Saga"), new)])

        collection = store.get_item("owner#u1", "library#l1#collection#c1")
        assert collection["GSI1SK"] == "collection#Dune Saga"

    @pytest.mark.asyncio
    async def test_removal_orphans_members(self, store):
        """Members leave the collection and sort by title again."""
        propagator = ConsistencyPropagator(store)

        result = await propagator.process_batch([remove(collection_image("u1", "l1", "c1", "Saga"))])

        assert result.reports[0].statements == 2
        item = store.get_item("owner#u1", "library#l1#item#i1")
        assert item["GSI1SK"] == "item#Dune"
        assert "CollectionId" not in item
        assert "CollectionName" not in item
        assert "Order" not in item


class TestConfiguration:
    """Tests for propagator settings."""

    @pytest.mark.parametrize("chunk_size", [0, 26])
    def test_chunk_size_bounds(self, chunk_size):
        """Chunks are capped by the store's batch limit."""
        with pytest.raises(ValueError):
            ConsistencyPropagator(InMemoryPrimaryStore(), chunk_size=chunk_size)

    @pytest.mark.asyncio
    async def test_smaller_chunks(self):
        """A smaller chunk size yields more batches."""
        store = InMemoryPrimaryStore()
        seed_library(store, 10)
        propagator = ConsistencyPropagator(store, chunk_size=4)

        result = await propagator.process_batch(
            [modify(library_image("u1", "l1", "Home"), library_image("u1", "l1", "Office"))]
        )

        assert result.reports[0].chunks == 3
