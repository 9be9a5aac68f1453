import pytest

from services.knowledge_sync.ChunkingService import ChunkingService
from shared.exceptions import ValidationError


@pytest.fixture
def chunker():
    return ChunkingService(chunk_size=200, chunk_overlap=20)


class TestChunking:
    def test_blank_text_has_no_chunks(self, chunker):
        assert chunker.chunk("") == []
        assert chunker.chunk("   \n\n  ") == []

    def test_short_text_is_one_chunk(self, chunker):
        assert chunker.chunk("A short note.") == ["A short note."]

    def test_long_text_is_split_within_size(self, chunker):
        text = " ".join(f"word{i}" for i in range(300))
        chunks = chunker.chunk(text)
        assert len(chunks) > 1
        assert all(len(chunk) <= 200 for chunk in chunks)
        assert chunks[0].startswith("word0 ")
        assert chunks[-1].endswith("word299")

    def test_consecutive_chunks_overlap(self, chunker):
        text = " ".join(f"w{i:03d}" for i in range(200))
        chunks = chunker.chunk(text)
        first_tail = chunks[0].split()[-1]
        assert first_tail in chunks[1].split()

    def test_headings_are_preferred_boundaries(self):
        chunker = ChunkingService(chunk_size=120, chunk_overlap=0)
        section = "Lorem ipsum dolor sit amet consectetur. " * 2
        text = f"# Title\n## First\n{section}\n## Second\n{section}"
        chunks = chunker.chunk(text)
        assert any(chunk.startswith("## Second") for chunk in chunks)

    def test_override_size(self, chunker):
        text = " ".join(f"word{i}" for i in range(100))
        assert len(chunker.chunk(text, chunk_size=50, chunk_overlap=0)) > len(chunker.chunk(text))

    @pytest.mark.parametrize("size, overlap", [(100, 100), (100, 150), (0, 0), (100, -1)])
    def test_invalid_configuration(self, size, overlap):
        with pytest.raises(ValidationError):
            ChunkingService(chunk_size=size, chunk_overlap=overlap)

    def test_invalid_override(self, chunker):
        with pytest.raises(ValidationError):
            chunker.chunk("some text", chunk_overlap=500)
