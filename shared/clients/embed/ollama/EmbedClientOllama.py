from shared.clients.embed.EmbedClientInterface import EmbedClientInterface
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig


class EmbedClientOllama(EmbedClientInterface):
    """Embedding client for a local or proxied Ollama server (``/api/embed``)."""

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._base_url = self.get_config_val("BASE_URL", default=None, val_type="string")
        # a reverse proxy in front of ollama may require a bearer token
        self._api_key = self.get_config_val("API_KEY", default="", val_type="string")
        # how long ollama keeps the model loaded between sync cycles, e.g. "10m"
        self._keep_alive = self.get_config_val("KEEP_ALIVE", default="", val_type="string")

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_engine_name(self) -> str:
        return "Ollama"

    ################ CONFIG ##################
    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="BASE_URL", val_type="string", default=None),
            EnvConfig(env_key="API_KEY", val_type="string", default=""),
            EnvConfig(env_key="KEEP_ALIVE", val_type="string", default=""),
        ]

    ################ AUTH ##################
    def _get_auth_header(self) -> dict:
        return {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}

    ################ ENDPOINTS ##################
    def _get_base_url(self) -> str:
        return self._base_url

    def _get_endpoint_healthcheck(self) -> str:
        return "/api/version"

    def get_endpoint_embedding(self) -> str:
        return "/api/embed"

    ################ PAYLOAD BUILDER ##################
    def get_embed_payload(self, texts: list[str]) -> dict:
        payload = {"model": self.embed_model, "input": texts}
        if self._keep_alive:
            payload["keep_alive"] = self._keep_alive
        return payload

    ##########################################
    ################# OTHER ##################
    ##########################################

    def extract_embeddings_from_response(self, response_data: dict) -> list[list[float]]:
        """Read the ``embeddings`` list of an /api/embed response.

        Ollama returns the vectors in input order, no re-sorting needed.

        Raises:
            ValueError: If a vector is missing or the vectors differ in length.
        """
        embeddings = response_data.get("embeddings")
        if not isinstance(embeddings, list) or not embeddings or any(not vector for vector in embeddings):
            raise ValueError(f"Ollama response does not contain valid embeddings. Response keys: {list(response_data)}")
        if len({len(vector) for vector in embeddings}) > 1:
            raise ValueError("Ollama returned embeddings of different lengths in one response.")
        return embeddings
