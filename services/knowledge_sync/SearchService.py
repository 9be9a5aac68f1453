from typing import Any

from shared.clients.embed.EmbedClientInterface import EmbedClientInterface
from shared.clients.storage.StorageClientInterface import StorageClientInterface
from shared.exceptions import ValidationError
from shared.helper.HelperConfig import HelperConfig
from shared.models.knowledge import ScoredFragment


class SearchService:
    """Embeds a query and returns the most similar stored fragments."""

    def __init__(
        self,
        helper_config: HelperConfig,
        storage: StorageClientInterface,
        embed_client: EmbedClientInterface,
        default_limit: int = 5,
        default_threshold: float = 0.5,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._storage = storage
        self._embed_client = embed_client
        self.default_limit = default_limit
        self.default_threshold = default_threshold

    ##########################################
    ################ SEARCH ##################
    ##########################################

    async def search(
        self,
        query: str,
        agent_id: str,
        limit: int | None = None,
        threshold: float | None = None,
        filters: dict[str, Any] | None = None,
    ) -> list[ScoredFragment]:
        """Run a similarity search over the fragments of an agent.

        Args:
            query (str): The search text.
            agent_id (str): Agent whose knowledge is searched.
            limit (int | None): Maximum number of hits, defaults to the configured limit.
            threshold (float | None): Minimum similarity (exclusive) in [-1, 1].
            filters (dict[str, Any] | None): Metadata filters on the fragments.

        Returns:
            list[ScoredFragment]: Hits ordered by similarity, empty if nothing clears the threshold.

        Raises:
            ValidationError: On a blank query, limit below 1 or threshold outside [-1, 1].
        """
        limit = self.default_limit if limit is None else limit
        threshold = self.default_threshold if threshold is None else threshold
        if not query or not query.strip():
            raise ValidationError("Search query must not be blank.")
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError(f"limit must be a positive integer, got {limit!r}.")
        if not -1.0 <= threshold <= 1.0:
            raise ValidationError(f"threshold must be within [-1, 1], got {threshold}.")

        embedding = await self._embed_client.embed_text(query)
        hits = await self._storage.do_search_similar(
            embedding=embedding,
            agent_id=agent_id,
            limit=limit,
            threshold=threshold,
            filters=filters,
        )
        self.logging.debug("Search for '%s' returned %d hits (threshold %.2f).", query[:50], len(hits), threshold)
        return hits
