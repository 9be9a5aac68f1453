"""Text extraction for downloaded knowledge files, dispatched by extension."""

import asyncio
import csv
import io
from pathlib import Path
from typing import Any, Callable

from shared.exceptions import ExtractionError, UnsupportedFormatError


def _read_text(file_path: Path) -> str:
    return file_path.read_text(encoding="utf-8")


def _read_csv(file_path: Path) -> str:
    """Render every row as "column: value" lines, rows separated by a blank line."""
    content = file_path.read_text(encoding="utf-8-sig")
    reader = csv.DictReader(io.StringIO(content))
    rows: list[str] = []
    for row in reader:
        lines = [f"{(key or '').strip()}: {(value or '').strip()}" for key, value in row.items() if key is not None]
        if lines:
            rows.append("\n".join(lines))
    return "\n\n".join(rows)


def _read_pdf(file_path: Path) -> str:
    from pypdf import PdfReader

    reader = PdfReader(str(file_path))
    parts: list[str] = []
    for page in reader.pages:
        page_text = page.extract_text() or ""
        if page_text.strip():
            parts.append(page_text)
    return "\n".join(parts)


def _read_docx(file_path: Path) -> str:
    from docx import Document

    doc = Document(str(file_path))
    parts = [para.text for para in doc.paragraphs if para.text.strip()]
    # tables are not part of doc.paragraphs
    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    return "\n".join(parts)


LOADERS: dict[str, Callable[[Path], str]] = {
    ".txt": _read_text,
    ".md": _read_text,
    ".csv": _read_csv,
    ".pdf": _read_pdf,
    ".docx": _read_docx,
}


def is_supported(file_name: str) -> bool:
    return Path(file_name).suffix.lower() in LOADERS


class DocumentLoader:
    """Extracts plain text from .txt, .md, .csv, .pdf and .docx files."""

    def __init__(self, logger: Any):
        self.logging = logger

    async def extract_text(self, file_path: Path, file_name: str | None = None) -> str:
        """
        Extract the text content of a file.

        Args:
            file_path: Path to the file on disk.
            file_name: Name used to pick the loader, defaults to the path name.

        Returns:
            Extracted text.

        Raises:
            UnsupportedFormatError: If no loader handles the extension.
            ExtractionError: If the parser fails.
        """
        suffix = Path(file_name or file_path.name).suffix.lower()
        loader = LOADERS.get(suffix)
        if loader is None:
            raise UnsupportedFormatError(
                f"Unsupported file type: '{suffix or '<none>'}'. Supported: {', '.join(sorted(LOADERS))}"
            )
        try:
            return await asyncio.to_thread(loader, file_path)
        except Exception as e:
            self.logging.error("Error parsing %s file %s: %s", suffix, file_name or file_path.name, e)
            raise ExtractionError(f"Failed to extract text from {file_name or file_path.name}: {e}") from e
