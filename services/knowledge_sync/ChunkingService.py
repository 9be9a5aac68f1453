"""Document chunking service."""

from langchain_text_splitters import RecursiveCharacterTextSplitter

from shared.exceptions import ValidationError

DEFAULT_CHUNK_SIZE = 7000     # characters per fragment
DEFAULT_CHUNK_OVERLAP = 500   # characters shared by consecutive fragments

# headings first, then paragraphs, lines, sentences, words, characters
SEPARATORS = ["\n## ", "\n### ", "\n#### ", "\n\n", "\n", ". ", " ", ""]


class ChunkingService:
    """Splits document text into overlapping chunks on natural boundaries."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE, chunk_overlap: int = DEFAULT_CHUNK_OVERLAP) -> None:
        self._validate(chunk_size, chunk_overlap)
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.splitter = self._build_splitter(chunk_size, chunk_overlap)

    @staticmethod
    def _validate(chunk_size: int, chunk_overlap: int) -> None:
        if chunk_size < 1:
            raise ValidationError(f"chunk_size must be positive, got {chunk_size}.")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValidationError(f"chunk_overlap must be in [0, chunk_size), got {chunk_overlap} for size {chunk_size}.")

    @staticmethod
    def _build_splitter(chunk_size: int, chunk_overlap: int) -> RecursiveCharacterTextSplitter:
        return RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            separators=SEPARATORS,
            length_function=len,
        )

    def chunk(self, text: str, chunk_size: int | None = None, chunk_overlap: int | None = None) -> list[str]:
        """
        Split text into chunks.

        Args:
            text: The full document text.
            chunk_size: Override of the configured target size.
            chunk_overlap: Override of the configured overlap.

        Returns:
            Ordered list of non-blank chunks, empty for blank text.

        Raises:
            ValidationError: If the overlap is not smaller than the size.
        """
        if not text or not text.strip():
            return []
        splitter = self.splitter
        if chunk_size is not None or chunk_overlap is not None:
            size = chunk_size if chunk_size is not None else self.chunk_size
            overlap = chunk_overlap if chunk_overlap is not None else self.chunk_overlap
            self._validate(size, overlap)
            splitter = self._build_splitter(size, overlap)
        return [chunk for chunk in splitter.split_text(text) if chunk.strip()]
