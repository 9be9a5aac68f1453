"""
Behaviour every storage engine must share. Runs against SQLite, and against
Postgres too when TEST_POSTGRES_DSN is set.
"""
import pytest

from conftest import AGENT_ID, DIMENSION, unit_vector
from shared.exceptions import ConflictError, ValidationError
from shared.models.knowledge import KnowledgeDocument, KnowledgeFragment


def make_document(doc_id: str, created_at: int = 1000, agent_id: str = AGENT_ID, **metadata) -> KnowledgeDocument:
    return KnowledgeDocument(
        id=doc_id,
        agent_id=agent_id,
        source=metadata.pop("source", "manual"),
        kind=metadata.pop("kind", None),
        checksum=f"sum-{doc_id}",
        created_at=created_at,
        metadata=metadata,
    )


def make_fragment(doc: KnowledgeDocument, index: int, embedding: list[float], text: str | None = None, **metadata) -> KnowledgeFragment:
    return KnowledgeFragment(
        id=f"{doc.id}-f{index}",
        document_id=doc.id,
        agent_id=doc.agent_id,
        text=text or f"fragment {index} of {doc.id}",
        chunk_index=index,
        created_at=doc.created_at,
        embedding=embedding,
        metadata=metadata,
    )


class TestInitialize:
    async def test_unsupported_dimension(self, storage):
        with pytest.raises(ValidationError):
            await storage.do_initialize(100)

    async def test_initialize_is_idempotent(self, storage):
        await storage.do_initialize(DIMENSION)
        assert storage.embedding_column == f"dim_{DIMENSION}"

    async def test_healthcheck(self, storage):
        assert await storage.do_healthcheck() is True


class TestDocuments:
    async def test_create_and_get(self, storage):
        doc = make_document("doc-1", source="remote", kind="faq", lang="en")
        await storage.do_create_document(doc)

        stored = await storage.do_get_document("doc-1")
        assert stored.id == "doc-1"
        assert stored.agent_id == AGENT_ID
        assert stored.source == "remote"
        assert stored.kind == "faq"
        assert stored.text == ""
        assert stored.created_at == 1000
        assert stored.metadata["lang"] == "en"
        assert stored.metadata["isMain"] is True
        assert stored.metadata["isChunk"] is False
        assert stored.metadata["source"] == "remote"

    async def test_get_is_scoped_to_agent(self, storage):
        await storage.do_create_document(make_document("doc-1"))
        assert await storage.do_get_document("doc-1", agent_id="someone-else") is None
        assert await storage.do_get_document("doc-1", agent_id=AGENT_ID) is not None

    async def test_get_missing(self, storage):
        assert await storage.do_get_document("missing") is None

    async def test_duplicate_id_conflicts(self, storage):
        await storage.do_create_document(make_document("doc-1"))
        with pytest.raises(ConflictError):
            await storage.do_create_document(make_document("doc-1"))

    async def test_conflicts_do_not_trip_the_breaker(self, storage):
        await storage.do_create_document(make_document("doc-1"))
        for _ in range(8):
            with pytest.raises(ConflictError):
                await storage.do_create_document(make_document("doc-1"))
        assert await storage.do_get_document("doc-1") is not None


class TestFragments:
    async def test_create_fragment_checks_dimension(self, storage):
        doc = make_document("doc-1")
        await storage.do_create_document(doc)
        with pytest.raises(ValidationError):
            await storage.do_create_fragment(make_fragment(doc, 0, [1.0, 0.0]))

    async def test_fragment_needs_parent(self, storage):
        orphan = make_document("ghost")
        with pytest.raises(ValidationError):
            await storage.do_create_fragment(make_fragment(orphan, 0, unit_vector(0)))

    async def test_list_fragments_in_order(self, storage):
        doc = make_document("doc-1")
        await storage.do_create_document(doc)
        for index in (2, 0, 1):
            await storage.do_create_fragment(make_fragment(doc, index, unit_vector(index)))

        fragments = await storage.do_list_fragments("doc-1")
        assert [f.chunk_index for f in fragments] == [0, 1, 2]
        assert all(f.embedding is None for f in fragments)
        assert fragments[0].metadata["isChunk"] is True
        assert fragments[0].metadata["documentId"] == "doc-1"

        with_vectors = await storage.do_list_fragments("doc-1", with_embeddings=True)
        assert len(with_vectors[1].embedding) == DIMENSION
        assert with_vectors[1].embedding[1] == pytest.approx(1.0)

    async def test_replace_swaps_all_fragments(self, storage):
        doc = make_document("doc-1")
        await storage.do_replace_document(doc, [make_fragment(doc, i, unit_vector(i)) for i in range(3)])

        new_doc = make_document("doc-1")
        new_doc.checksum = "sum-new"
        replacement = [make_fragment(new_doc, 0, unit_vector(5), text="only fragment")]
        replacement[0].id = "doc-1-new"
        await storage.do_replace_document(new_doc, replacement)

        fragments = await storage.do_list_fragments("doc-1")
        assert [f.id for f in fragments] == ["doc-1-new"]
        assert (await storage.do_get_document("doc-1")).checksum == "sum-new"

    async def test_replace_is_atomic(self, storage):
        doc = make_document("doc-1")
        await storage.do_replace_document(doc, [make_fragment(doc, 0, unit_vector(0))])

        broken = make_document("doc-1")
        broken.checksum = "sum-broken"
        with pytest.raises(ValidationError):
            await storage.do_replace_document(broken, [make_fragment(broken, 0, [0.5])])

        assert (await storage.do_get_document("doc-1")).checksum == "sum-doc-1"
        assert len(await storage.do_list_fragments("doc-1")) == 1


class TestDelete:
    async def test_delete_removes_fragments_and_is_idempotent(self, storage):
        doc = make_document("doc-1")
        await storage.do_replace_document(doc, [make_fragment(doc, i, unit_vector(i)) for i in range(2)])

        assert await storage.do_delete_document("doc-1") is True
        assert await storage.do_get_document("doc-1") is None
        assert await storage.do_list_fragments("doc-1") == []
        assert await storage.do_delete_document("doc-1") is False

    async def test_clear_agent(self, storage):
        for doc_id in ("a", "b"):
            doc = make_document(doc_id)
            await storage.do_replace_document(doc, [make_fragment(doc, 0, unit_vector(0))])
        await storage.do_create_document(make_document("other", agent_id="agent-other"))

        assert await storage.do_clear_agent(AGENT_ID) == 2
        page = await storage.do_list_documents(AGENT_ID)
        assert page.items == []
        assert await storage.do_get_document("other") is not None

    async def test_replace_never_touches_other_agents(self, storage):
        foreign = make_document("shared-id", agent_id="agent-other")
        await storage.do_replace_document(foreign, [make_fragment(foreign, 0, unit_vector(0))])

        mine = make_document("shared-id")
        with pytest.raises(ConflictError):
            await storage.do_replace_document(mine, [make_fragment(mine, 0, unit_vector(1), text="mine")])

        stored = await storage.do_get_document("shared-id")
        assert stored.agent_id == "agent-other"
        assert [f.text for f in await storage.do_list_fragments("shared-id")] == ["fragment 0 of shared-id"]

    async def test_delete_scoped_to_agent(self, storage):
        foreign = make_document("doc-1", agent_id="agent-other")
        await storage.do_replace_document(foreign, [make_fragment(foreign, 0, unit_vector(0))])

        assert await storage.do_delete_document("doc-1", agent_id=AGENT_ID) is False
        assert await storage.do_get_document("doc-1") is not None
        assert len(await storage.do_list_fragments("doc-1")) == 1
        assert await storage.do_list_fragments("doc-1", agent_id=AGENT_ID) == []

        assert await storage.do_delete_document("doc-1", agent_id="agent-other") is True
        assert await storage.do_get_document("doc-1") is None


class TestListing:
    async def _seed(self, storage):
        for i in range(5):
            await storage.do_create_document(make_document(f"doc-{i}", created_at=1000 + i, year=2020 + i))

    async def test_pages_newest_first(self, storage):
        await self._seed(storage)
        seen = []
        cursor = None
        pages = 0
        while True:
            page = await storage.do_list_documents(AGENT_ID, limit=2, cursor=cursor)
            seen.extend(doc.id for doc in page.items)
            pages += 1
            if page.next_cursor is None:
                break
            cursor = page.next_cursor
        assert seen == ["doc-4", "doc-3", "doc-2", "doc-1", "doc-0"]
        assert pages == 3

    async def test_exact_page_has_no_next_cursor(self, storage):
        await self._seed(storage)
        page = await storage.do_list_documents(AGENT_ID, limit=5)
        assert len(page.items) == 5
        assert page.next_cursor is None

    async def test_ascending_with_equal_timestamps(self, storage):
        for doc_id in ("b", "a", "c"):
            await storage.do_create_document(make_document(doc_id, created_at=5000))
        first = await storage.do_list_documents(AGENT_ID, limit=2, sort="asc")
        second = await storage.do_list_documents(AGENT_ID, limit=2, sort="asc", cursor=first.next_cursor)
        assert [d.id for d in first.items] == ["a", "b"]
        assert [d.id for d in second.items] == ["c"]
        assert second.next_cursor is None

    @pytest.mark.parametrize("sort", ["desc", "asc"])
    @pytest.mark.parametrize("limit", [1, 2, 3, 4, 7, 8, 20])
    async def test_paging_matches_one_unbounded_call(self, storage, limit, sort):
        # equal timestamps force the id tie-break
        for i in range(7):
            await storage.do_create_document(make_document(f"doc-{i}", created_at=1000 + i // 2))
        expected = [d.id for d in (await storage.do_list_documents(AGENT_ID, limit=1000, sort=sort)).items]

        seen = []
        cursor = None
        while True:
            page = await storage.do_list_documents(AGENT_ID, limit=limit, cursor=cursor, sort=sort)
            assert len(page.items) <= limit
            seen.extend(d.id for d in page.items)
            if page.next_cursor is None:
                break
            cursor = page.next_cursor
        assert seen == expected
        assert len(expected) == 7

    async def test_fragments_are_not_listed(self, storage):
        doc = make_document("doc-1")
        await storage.do_replace_document(doc, [make_fragment(doc, i, unit_vector(i)) for i in range(3)])
        page = await storage.do_list_documents(AGENT_ID)
        assert [d.id for d in page.items] == ["doc-1"]

    async def test_include_fragments(self, storage):
        doc = make_document("doc-1")
        await storage.do_replace_document(doc, [make_fragment(doc, i, unit_vector(i)) for i in range(2)])
        await storage.do_create_document(make_document("doc-2", created_at=900))

        page = await storage.do_list_documents(AGENT_ID, include_fragments=True)
        by_id = {d.id: d for d in page.items}
        assert [f.chunk_index for f in by_id["doc-1"].fragments] == [0, 1]
        assert by_id["doc-2"].fragments == []

    async def test_filters(self, storage):
        await self._seed(storage)
        await storage.do_create_document(make_document("tagged", created_at=2000, tags=["faq", "billing"], kind="faq"))

        newer = await storage.do_list_documents(AGENT_ID, filters={"year": {"$gte": 2023}})
        assert {d.id for d in newer.items} == {"doc-3", "doc-4"}

        tagged = await storage.do_list_documents(AGENT_ID, filters={"tags": {"$contains": "billing"}})
        assert [d.id for d in tagged.items] == ["tagged"]

        by_kind = await storage.do_list_documents(AGENT_ID, filters={"kind": "faq"})
        assert [d.id for d in by_kind.items] == ["tagged"]

        some = await storage.do_list_documents(AGENT_ID, filters={"year": {"$in": [2020, 2022]}})
        assert {d.id for d in some.items} == {"doc-0", "doc-2"}

        not_manual = await storage.do_list_documents(AGENT_ID, filters={"source": {"$ne": "manual"}})
        assert not_manual.items == []

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"limit": 0},
            {"limit": 1001},
            {"sort": "sideways"},
            {"cursor": "definitely-not-a-cursor"},
            {"filters": {"tags": ["a"]}},
        ],
    )
    async def test_invalid_arguments(self, storage, kwargs):
        with pytest.raises(ValidationError):
            await storage.do_list_documents(AGENT_ID, **kwargs)


class TestSimilaritySearch:
    async def _seed(self, storage):
        doc = make_document("doc-1", kind="faq")
        await storage.do_replace_document(doc, [
            make_fragment(doc, 0, unit_vector(0), kind="faq"),
            make_fragment(doc, 1, unit_vector(0, 1), kind="faq"),
            make_fragment(doc, 2, unit_vector(2), kind="faq"),
        ])
        other = make_document("doc-2", kind="manual")
        await storage.do_replace_document(other, [make_fragment(other, 0, unit_vector(0, 1, 2), kind="manual")])
        foreign = make_document("doc-3", agent_id="agent-other")
        await storage.do_replace_document(foreign, [make_fragment(foreign, 0, unit_vector(0))])

    async def test_best_first_above_threshold(self, storage):
        await self._seed(storage)
        hits = await storage.do_search_similar(unit_vector(0), AGENT_ID, limit=10, threshold=0.5)
        assert [h.id for h in hits] == ["doc-1-f0", "doc-1-f1", "doc-2-f0"]
        assert hits[0].similarity == pytest.approx(1.0, abs=1e-5)
        assert hits[1].similarity == pytest.approx(0.7071, abs=1e-3)
        assert hits[2].similarity == pytest.approx(0.5774, abs=1e-3)

    async def test_threshold_is_exclusive(self, storage):
        await self._seed(storage)
        hits = await storage.do_search_similar(unit_vector(2), AGENT_ID, limit=10, threshold=1.0)
        assert hits == []
        hits = await storage.do_search_similar(unit_vector(2), AGENT_ID, limit=10, threshold=0.99)
        assert [h.id for h in hits] == ["doc-1-f2"]

    async def test_limit_and_agent_scope(self, storage):
        await self._seed(storage)
        hits = await storage.do_search_similar(unit_vector(0), AGENT_ID, limit=1, threshold=0.0)
        assert [h.id for h in hits] == ["doc-1-f0"]
        assert all(h.agent_id == AGENT_ID for h in await storage.do_search_similar(unit_vector(0), AGENT_ID, limit=10, threshold=-1.0))

    async def test_filters_apply_to_fragments(self, storage):
        await self._seed(storage)
        hits = await storage.do_search_similar(unit_vector(0), AGENT_ID, limit=10, threshold=0.1, filters={"kind": "manual"})
        assert [h.id for h in hits] == ["doc-2-f0"]

    async def test_zero_vectors_never_match(self, storage):
        doc = make_document("doc-zero")
        await storage.do_replace_document(doc, [make_fragment(doc, 0, [0.0] * DIMENSION)])
        assert await storage.do_search_similar(unit_vector(0), AGENT_ID, limit=10, threshold=-1.0) == []

    async def test_query_dimension_mismatch(self, storage):
        with pytest.raises(ValidationError):
            await storage.do_search_similar([1.0, 0.0], AGENT_ID)
