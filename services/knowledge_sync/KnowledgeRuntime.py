"""Boots the clients of the knowledge engine and wires the services together."""

from services.knowledge_sync.KnowledgeRegistry import KnowledgeRegistry
from services.knowledge_sync.KnowledgeService import KnowledgeService
from shared.clients.embed.EmbedClientInterface import EmbedClientInterface
from shared.clients.embed.EmbedClientManager import EmbedClientManager
from shared.clients.source.SourceClientInterface import SourceClientInterface
from shared.clients.source.SourceClientManager import SourceClientManager
from shared.clients.storage.StorageClientInterface import StorageClientInterface
from shared.clients.storage.StorageClientManager import StorageClientManager
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import KnowledgeSettings


class KnowledgeRuntime:
    """Owns the clients, the registry and the knowledge service of the configured agent."""

    def __init__(self, helper_config: HelperConfig, with_source: bool = True) -> None:
        self.helper_config = helper_config
        self.logging = helper_config.get_logger()
        self.settings = KnowledgeSettings.from_config(helper_config)
        self.registry = KnowledgeRegistry(helper_config)

        self.embed_client: EmbedClientInterface = EmbedClientManager(helper_config=helper_config).get_client()
        self.storage: StorageClientInterface = StorageClientManager(helper_config=helper_config).get_client()
        self.source_client: SourceClientInterface | None = None
        if with_source:
            self.source_client = SourceClientManager(helper_config=helper_config).get_client()
        self.service: KnowledgeService | None = None

    async def boot(self) -> KnowledgeService:
        """Boot all clients, detect the embedding dimension and initialise the storage schema.

        Returns:
            KnowledgeService: The registered service of the configured agent.

        Raises:
            Exception: If a required client cannot be booted. Already booted clients are closed again.
        """
        try:
            # embed client is required, without it neither ingestion nor search work
            await self.embed_client.boot()
            dimension = await self.embed_client.do_detect_dimension()

            await self.storage.boot()
            await self.storage.do_initialize(dimension)

            if self.source_client is not None:
                await self.source_client.boot()
        except Exception as e:
            self.logging.error("Booting the knowledge engine failed: %s", e)
            await self.close()
            raise

        self.service = self.registry.register(KnowledgeService(
            helper_config=self.helper_config,
            settings=self.settings,
            storage=self.storage,
            embed_client=self.embed_client,
            source_client=self.source_client,
        ))
        return self.service

    async def close(self) -> None:
        """Stop every service, then close the clients."""
        await self.registry.shutdown()
        await self.embed_client.close()
        await self.storage.close()
        if self.source_client is not None:
            await self.source_client.close()
