import hashlib
import time
import uuid


def deterministic_id(value: str) -> str:
    """Build a stable UUID5 for a remote knowledge item.

    The same URL always maps to the same id, so re-syncing finds the
    existing document instead of creating a duplicate.

    Args:
        value (str): The item URL.

    Returns:
        str: UUID string.
    """
    return str(uuid.uuid5(uuid.NAMESPACE_URL, value))


def fragment_id(document_id: str, checksum: str, chunk_index: int) -> str:
    """Build the id of one fragment of a document version.

    Args:
        document_id (str): Parent document id.
        checksum (str): Checksum of the parent text.
        chunk_index (int): Zero-based position of the fragment.

    Returns:
        str: UUID string, unique per (document, content, position).
    """
    return str(uuid.uuid5(uuid.NAMESPACE_OID, f"{document_id}:{checksum}:{chunk_index}"))


def calculate_checksum(text: str) -> str:
    """SHA-256 hex digest of the UTF-8 text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def now_ms() -> int:
    return int(time.time() * 1000)
