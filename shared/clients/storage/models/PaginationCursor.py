"""Opaque keyset cursor shared by all storage engines."""

import base64
import binascii
import json

from pydantic import BaseModel, ConfigDict, Field

from shared.exceptions import ValidationError


class PaginationCursor(BaseModel):
    """
    Position after the last returned row of a ``(created_at, id)`` ordered listing.

    Encoded as base64 of ``{"createdAt": <int>, "id": <str>}``.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    created_at: int = Field(alias="createdAt")
    id: str

    def encode(self) -> str:
        payload = json.dumps({"createdAt": self.created_at, "id": self.id}, separators=(",", ":"))
        return base64.b64encode(payload.encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, token: str) -> "PaginationCursor":
        """Decode a cursor token.

        Args:
            token (str): The base64 token returned as ``next_cursor``.

        Returns:
            PaginationCursor: The decoded position.

        Raises:
            ValidationError: If the token is not a cursor produced by encode().
        """
        try:
            raw = json.loads(base64.b64decode(token.encode("ascii"), validate=True).decode("utf-8"))
        except (binascii.Error, UnicodeError, ValueError) as e:
            raise ValidationError(f"Invalid pagination cursor: {e}") from e
        if (
            not isinstance(raw, dict)
            or isinstance(raw.get("createdAt"), bool)
            or not isinstance(raw.get("createdAt"), int)
            or not isinstance(raw.get("id"), str)
        ):
            raise ValidationError("Invalid pagination cursor: expected {createdAt: int, id: str}.")
        return cls(created_at=raw["createdAt"], id=raw["id"])
