from pydantic import ValidationError as PydanticValidationError

from shared.clients.source.SourceClientInterface import SourceClientInterface
from shared.clients.source.models.KnowledgeItem import RemoteKnowledgeItem, RemoteKnowledgePage
from shared.exceptions import RemoteRequestError
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig


class SourceClientRest(SourceClientInterface):
    """
    Lists knowledge files through a JSON POST endpoint.

    Request body ``{"agentId", "limit", "cursor"}``, response is a JSON array
    of items. The cursor is the numeric id of the last item, 0 for the first page.
    """

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._base_url = self.get_config_val("BASE_URL", default=None, val_type="string")
        self._api_key = self.get_config_val("API_KEY", default="", val_type="string")
        self._cookie = self.get_config_val("COOKIE", default="", val_type="string")
        self._owner = self.get_config_val("OWNER", default=None, val_type="string")
        self._endpoint = self.get_config_val("ENDPOINT", default="/api/agents/knowledge/get", val_type="string")

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_engine_name(self) -> str:
        return "Rest"

    def get_owner(self) -> str:
        return self._owner

    ################ CONFIG ##################
    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="BASE_URL", val_type="string", default=None),
            EnvConfig(env_key="OWNER", val_type="string", default=None),
            EnvConfig(env_key="API_KEY", val_type="string", default=""),
            EnvConfig(env_key="COOKIE", val_type="string", default=""),
            EnvConfig(env_key="ENDPOINT", val_type="string", default="/api/agents/knowledge/get"),
        ]

    ################ AUTH ##################
    def _get_auth_header(self) -> dict:
        headers = {}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        if self._cookie:
            headers["Cookie"] = self._cookie
        return headers

    ################ ENDPOINTS ##################
    def _get_base_url(self) -> str:
        return self._base_url

    def _get_endpoint_healthcheck(self) -> str:
        return ""

    def _get_endpoint_knowledge(self) -> str:
        return self._endpoint

    ################ PAYLOAD BUILDER ##################
    def get_knowledge_payload(self, owner: str, limit: int, cursor: int | None) -> dict:
        return {"agentId": owner, "limit": limit, "cursor": cursor if cursor is not None else 0}

    def extract_knowledge_page(self, raw_response: list | dict, limit: int) -> RemoteKnowledgePage:
        if not isinstance(raw_response, list):
            raise RemoteRequestError(f"Expected a JSON array of knowledge items, got {type(raw_response).__name__}.")
        try:
            items = [RemoteKnowledgeItem.model_validate(raw) for raw in raw_response]
        except PydanticValidationError as e:
            raise RemoteRequestError(f"Malformed knowledge item in response: {e}") from e
        # a short page is the last page
        next_cursor = items[-1].id if items and len(items) >= limit else None
        return RemoteKnowledgePage(items=items, next_cursor=next_cursor)

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_healthcheck(self):
        """Fetch a single item to check that the endpoint answers."""
        return await self.do_fetch_knowledge_page(limit=1)
