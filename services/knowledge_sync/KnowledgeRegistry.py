import asyncio

from services.knowledge_sync.KnowledgeService import KnowledgeService
from shared.helper.HelperConfig import HelperConfig


class KnowledgeRegistry:
    """Explicit registry of the knowledge services of all running agents."""

    def __init__(self, helper_config: HelperConfig) -> None:
        self.logging = helper_config.get_logger()
        self._services: dict[str, KnowledgeService] = {}

    def register(self, service: KnowledgeService) -> KnowledgeService:
        """Register a service under its agent id.

        Raises:
            ValueError: If another service is already registered for the agent.
        """
        existing = self._services.get(service.agent_id)
        if existing is not None and existing is not service:
            raise ValueError(f"A knowledge service is already registered for agent {service.agent_id}.")
        self._services[service.agent_id] = service
        return service

    def get(self, agent_id: str) -> KnowledgeService | None:
        return self._services.get(agent_id)

    def agent_ids(self) -> list[str]:
        return list(self._services)

    async def unregister(self, agent_id: str) -> KnowledgeService | None:
        """Stop and remove the service of an agent."""
        service = self._services.pop(agent_id, None)
        if service is not None:
            await service.stop()
        return service

    async def shutdown(self) -> None:
        """Stop every service and wait for in-flight cycles. Call before closing clients."""
        services = list(self._services.values())
        self._services.clear()
        results = await asyncio.gather(*[s.stop() for s in services], return_exceptions=True)
        for service, result in zip(services, results):
            if isinstance(result, Exception):
                self.logging.error("Stopping knowledge service of agent %s failed: %s", service.agent_id, result)
