"""
Unit tests for full-text search.

Tests cover:
- Query construction (prefix, fuzzy alternatives, AND across terms)
- Access filter rendering
- Index build and read-only open
- Executor: access scoping per grant, fuzzy matching, result resolution
"""

import pytest

from alexandria.catalog_sync.model import LibraryItem, ShareGrant
from alexandria.catalog_sync.search import (
    AccessFilter,
    FullTextIndex,
    IndexBuilder,
    IndexDocument,
    LocalIndexSource,
    SearchError,
    SearchExecutor,
    build_text_query,
    normalize_terms,
)
from alexandria.catalog_sync.search.query import fuzzy_variants, quote
from alexandria.catalog_sync.store import InMemoryPrimaryStore, StoreError
from tests.records import item_image, library_image, share_image

CATALOG = [
    item_image("u1", "l1", "i1", "Dune", authors=["Frank Herbert"]),
    item_image("u1", "l1", "i2", "Emma", authors=["Jane Austen"]),
    item_image(
        "u1", "l1", "i3", "Children of Dune", collection_id="c1", collection_name="Saga", order=3
    ),
    item_image("u1", "l1", "i4", "Les Misérables", authors=["Victor Hugo"]),
    item_image("u2", "l2", "i5", "Dune Messiah", authors=["Frank Herbert"]),
    item_image("u2", "l3", "i6", "Dune Encyclopedia"),
    item_image("u3", "l4", "i7", "Dune"),
    item_image(
        "u1",
        "l1",
        "i8",
        "Blade Runner",
        kind="VIDEO",
        Directors=["Ridley Scott"],
        Cast=["Harrison Ford", "Rutger Hauer"],
    ),
]


def documents():
    return [IndexDocument.from_item(LibraryItem.from_image(image)) for image in CATALOG]


@pytest.fixture
def index_path(tmp_path):
    path = tmp_path / "global-index.sqlite"
    IndexBuilder(path).build(documents())
    return path


@pytest.fixture
def store():
    store = InMemoryPrimaryStore()
    store.put_item(library_image("u1", "l1", "Home"))
    for image in CATALOG:
        store.put_item(image)
    # u2 shares l2 (but not l3) with u1
    store.put_item(share_image("u2", "u1", "l2"))
    return store


@pytest.fixture
def executor(store, index_path):
    return SearchExecutor(store, LocalIndexSource(index_path), fuzziness=1)


class TestQuery:
    """Tests for match expression construction."""

    def test_normalize_terms(self):
        """Terms are trimmed, lower-cased and empty ones dropped."""
        assert normalize_terms([" Dune ", "", "   ", "HERBERT"]) == ["dune", "herbert"]

    def test_quote_escapes_double_quotes(self):
        assert quote('say "hi"') == '"say ""hi"""'

    def test_single_term_with_variant(self):
        assert build_text_query(["dune"], ["dune", "dine"], fuzziness=1) == '("dune"* OR "dine")'

    def test_terms_are_anded(self):
        """Every term must match."""
        assert build_text_query(["dune", "herbert"], [], fuzziness=0) == '("dune"*) AND ("herbert"*)'

    def test_fuzzy_variants_within_distance(self):
        """Only index terms within the edit distance are alternatives."""
        vocabulary = ["dune", "dine", "june", "dunes", "herbert", "done"]

        assert set(fuzzy_variants("dune", vocabulary, 1)) == {"dine", "june", "dunes", "done"}
        assert fuzzy_variants("dune", vocabulary, 0) == []

    def test_requires_terms(self):
        with pytest.raises(ValueError):
            build_text_query([], ["dune"])


class TestAccessFilter:
    """Tests for the access filter."""

    def test_own_documents_only(self):
        sql, params = AccessFilter("u1").to_sql()

        assert sql == "(d.owner_id = ?)"
        assert params == ["u1"]

    def test_grants_are_scoped_to_their_library(self):
        """A grant opens one library of its owner, not all of them."""
        access = AccessFilter("u1", [ShareGrant(owner_id="u2", grantee_id="u1", library_id="l2")])

        sql, params = access.to_sql("x")

        assert sql == "(x.owner_id = ? OR (x.owner_id = ? AND x.library_id = ?))"
        assert params == ["u1", "u2", "l2"]
        assert access.allows("u2", "l2")
        assert not access.allows("u2", "l3")
        assert access.allows("u1", "anything")


class TestFullTextIndex:
    """Tests for building and opening the index file."""

    def test_build_counts_documents(self, index_path):
        with FullTextIndex.open(index_path) as index:
            assert index.count() == len(CATALOG)

    def test_vocabulary_is_folded(self, index_path):
        """Terms are lower-cased and stripped of diacritics."""
        with FullTextIndex.open(index_path) as index:
            vocabulary = index.vocabulary()

        assert "herbert" in vocabulary
        assert "miserables" in vocabulary
        assert "saga" in vocabulary

    def test_rebuild_replaces_file(self, index_path):
        """A rebuild drops documents that are gone."""
        IndexBuilder(index_path).build(documents()[:2])

        with FullTextIndex.open(index_path) as index:
            assert index.count() == 2

    def test_open_path_with_uri_characters(self, tmp_path):
        """Directory names with URI delimiters are escaped when opening."""
        path = tmp_path / "cache#1 %20?x" / "global-index.sqlite"
        IndexBuilder(path).build(documents())

        with FullTextIndex.open(path) as index:
            assert index.count() == len(CATALOG)

    def test_open_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            with FullTextIndex.open(tmp_path / "missing.sqlite"):
                pass

    def test_document_from_non_item(self):
        """Only books and videos become documents."""
        assert IndexDocument.from_image(library_image("u1", "l1", "Home")) is None

    def test_document_id_carries_table_key(self):
        document = IndexDocument.from_image(CATALOG[0])

        assert document.doc_id == "owner#u1|library#l1#item#i1"
        assert document.authors == "Frank Herbert"

    def test_video_document_carries_directors_and_cast(self):
        document = IndexDocument.from_image(CATALOG[-1])

        assert document.authors == "Ridley Scott Harrison Ford Rutger Hauer"


class TestSearchExecutor:
    """Tests for the search executor."""

    @pytest.mark.asyncio
    async def test_own_and_shared_libraries(self, executor):
        """Own items and items of granted libraries match; others do not."""
        items = await executor.search("u1", ["dune"])

        assert {(i.owner_id, i.id) for i in items} == {
            ("u1", "i1"),
            ("u1", "i3"),
            ("u2", "i5"),
        }

    @pytest.mark.asyncio
    async def test_all_terms_must_match(self, executor):
        items = await executor.search("u1", ["dune", "herbert"])

        assert {i.id for i in items} == {"i1", "i5"}

    @pytest.mark.asyncio
    async def test_prefix_match(self, executor):
        items = await executor.search("u1", ["mess"])

        assert [i.title for i in items] == ["Dune Messiah"]

    @pytest.mark.asyncio
    async def test_fuzzy_match(self, executor):
        """A one-letter typo still finds the item."""
        items = await executor.search("u1", ["herbart"])

        assert {i.id for i in items} == {"i1", "i5"}

    @pytest.mark.asyncio
    async def test_no_fuzziness(self, store, index_path):
        executor = SearchExecutor(store, LocalIndexSource(index_path), fuzziness=0)

        assert await executor.search("u1", ["herbart"]) == []

    @pytest.mark.asyncio
    async def test_video_found_by_director(self, executor):
        items = await executor.search("u1", ["ridley"])

        assert [i.id for i in items] == ["i8"]
        assert items[0].directors == ["Ridley Scott"]
        assert items[0].cast == ["Harrison Ford", "Rutger Hauer"]

    @pytest.mark.asyncio
    async def test_video_found_by_cast_member(self, executor):
        items = await executor.search("u1", ["hauer"])

        assert [i.title for i in items] == ["Blade Runner"]

    @pytest.mark.asyncio
    async def test_collection_name_is_searchable(self, executor):
        items = await executor.search("u1", ["saga"])

        assert [i.id for i in items] == ["i3"]
        assert items[0].collection_name == "Saga"

    @pytest.mark.asyncio
    async def test_diacritics_are_folded(self, executor):
        items = await executor.search("u1", ["Miserables"])

        assert [i.title for i in items] == ["Les Misérables"]

    @pytest.mark.asyncio
    async def test_results_come_from_the_table(self, store, executor):
        """Returned content is read from the catalog table, not the index."""
        image = dict(CATALOG[0], Summary="Desert planet", LentTo="Alice")
        store.put_item(image)

        items = await executor.search("u1", ["herbert"])

        dune = next(i for i in items if i.id == "i1")
        assert dune.summary == "Desert planet"
        assert dune.lent_to == "Alice"
        assert dune.authors == ["Frank Herbert"]

    @pytest.mark.asyncio
    async def test_deleted_items_are_skipped(self, store, executor):
        """Items deleted since the last build are not returned."""
        store.delete_item("owner#u1", "library#l1#item#i1")

        items = await executor.search("u1", ["herbert"])

        assert [i.id for i in items] == ["i5"]

    @pytest.mark.asyncio
    async def test_max_results(self, store, index_path):
        executor = SearchExecutor(store, LocalIndexSource(index_path), max_results=1)

        assert len(await executor.search("u1", ["dune"])) == 1

    @pytest.mark.asyncio
    async def test_empty_terms(self, executor):
        assert await executor.search("u1", ["", "  "]) == []

    @pytest.mark.asyncio
    async def test_no_index_yet(self, store, tmp_path):
        executor = SearchExecutor(store, LocalIndexSource(tmp_path / "missing.sqlite"))

        assert await executor.search("u1", ["dune"]) == []

    @pytest.mark.asyncio
    async def test_corrupt_index(self, store, tmp_path):
        path = tmp_path / "global-index.sqlite"
        path.write_bytes(b"this is not a database" * 100)
        executor = SearchExecutor(store, LocalIndexSource(path))

        with pytest.raises(SearchError):
            await executor.search("u1", ["dune"])

    @pytest.mark.asyncio
    async def test_store_failure(self, index_path):
        class FailingStore(InMemoryPrimaryStore):
            async def batch_get_items(self, keys):
                raise StoreError("Injected read failure")

        executor = SearchExecutor(FailingStore(), LocalIndexSource(index_path))

        with pytest.raises(SearchError):
            await executor.search("u1", ["dune"])
