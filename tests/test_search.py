import pytest

from shared.exceptions import ValidationError


@pytest.fixture
async def seeded(knowledge):
    await knowledge.add("cats", "The cat sat on the mat", {"kind": "story"})
    await knowledge.add("revenue", "Quarterly revenue grew by ten percent", {"kind": "report"})
    await knowledge.add("dogs", "A dog chased the cat around the garden", {"kind": "story"})
    return knowledge


class TestSearch:
    async def test_best_match_first(self, seeded):
        hits = await seeded.search("cat mat")
        assert hits[0].document_id == "cats"
        assert "revenue" not in {h.document_id for h in hits}
        assert all(h.similarity > 0.3 for h in hits)
        assert hits == sorted(hits, key=lambda h: h.similarity, reverse=True)

    async def test_hits_have_no_embeddings(self, seeded):
        hits = await seeded.search("revenue percent")
        assert hits[0].document_id == "revenue"
        assert "embedding" not in hits[0].model_dump()
        assert hits[0].agent_id == seeded.agent_id

    async def test_limit(self, seeded):
        hits = await seeded.search("the cat", limit=1, threshold=0.0)
        assert len(hits) == 1

    async def test_threshold_can_exclude_everything(self, seeded):
        assert await seeded.search("unrelated words entirely", threshold=0.1) == []

    async def test_raising_threshold_only_drops_hits(self, seeded):
        previous = None
        for threshold in (-1.0, -0.5, 0.0, 0.1, 0.2, 0.3, 0.5, 0.8, 0.99):
            hits = await seeded.search("the cat sat", limit=50, threshold=threshold)
            ids = [h.id for h in hits]
            assert all(h.similarity > threshold for h in hits)
            if previous is not None:
                assert ids == [i for i in previous if i in ids]
            previous = ids
        assert previous == []

    async def test_filters(self, seeded):
        hits = await seeded.search("the cat", threshold=0.0, filters={"kind": "story"})
        assert {h.document_id for h in hits} == {"cats", "dogs"}

    async def test_empty_store(self, knowledge):
        assert await knowledge.search("anything at all") == []

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"query": ""},
            {"query": "   "},
            {"query": "cat", "limit": 0},
            {"query": "cat", "threshold": 1.5},
            {"query": "cat", "threshold": -2.0},
            {"query": "cat", "filters": {"kind": ["story"]}},
        ],
    )
    async def test_invalid_arguments(self, knowledge, kwargs):
        with pytest.raises(ValidationError):
            await knowledge.search(**kwargs)
