from pydantic import BaseModel

from shared.helper.HelperConfig import HelperConfig


class EnvConfig(BaseModel):
    """
    Represents a single configuration parameter required by a client engine.

    Attributes:
        env_key (str): The raw key, prefixed by the client type and engine name when read (e.g. "DSN" -> "STORAGE_POSTGRES_DSN").
        val_type (str): The expected type of the value. Supported types are "string", "number", "bool" and "list".
        default (str | int | float | bool | list | None): Default value if the variable is not set. None marks the variable as required.
    """

    env_key: str
    val_type: str
    default: str | int | float | bool | list | None = None


class KnowledgeSettings(BaseModel):
    """Knowledge engine settings shared by ingestion, sync and search.

    Read from the ``KNOWLEDGE_*`` environment variables through
    :meth:`from_config`.
    """

    agent_id: str
    source_name: str = "remote"
    knowledge_root: str
    sync_interval: float = 60.0
    sync_page_size: int = 100
    chunk_size: int = 7000
    chunk_overlap: int = 500
    embed_concurrency: int = 4
    ingest_concurrency: int = 2
    search_limit: int = 5
    search_threshold: float = 0.5
    recheck_existing: bool = False

    @classmethod
    def from_config(cls, helper_config: HelperConfig) -> "KnowledgeSettings":
        """Build the settings from environment variables.

        Args:
            helper_config (HelperConfig): The configuration helper.

        Returns:
            KnowledgeSettings: The resolved settings.

        Raises:
            ValueError: If KNOWLEDGE_AGENT_ID is not set or a value is malformed.
        """
        return cls(
            agent_id=helper_config.get_string_val("KNOWLEDGE_AGENT_ID"),
            source_name=helper_config.get_string_val("KNOWLEDGE_SOURCE_NAME", default="remote"),
            knowledge_root=str(helper_config.get_path_val("KNOWLEDGE_ROOT", default="knowledge", create=True)),
            sync_interval=helper_config.get_number_val("KNOWLEDGE_SYNC_INTERVAL", default=60.0),
            sync_page_size=helper_config.get_number_val("KNOWLEDGE_SYNC_PAGE_SIZE", default=100),
            chunk_size=helper_config.get_number_val("KNOWLEDGE_CHUNK_SIZE", default=7000),
            chunk_overlap=helper_config.get_number_val("KNOWLEDGE_CHUNK_OVERLAP", default=500),
            embed_concurrency=helper_config.get_number_val("KNOWLEDGE_EMBED_CONCURRENCY", default=4),
            ingest_concurrency=helper_config.get_number_val("KNOWLEDGE_INGEST_CONCURRENCY", default=2),
            search_limit=helper_config.get_number_val("KNOWLEDGE_SEARCH_LIMIT", default=5),
            search_threshold=helper_config.get_number_val("KNOWLEDGE_SEARCH_THRESHOLD", default=0.5),
            recheck_existing=helper_config.get_bool_val("KNOWLEDGE_RECHECK_EXISTING", default=False),
        )
