from abc import abstractmethod

from shared.clients.HttpClientInterface import HttpClientInterface
from shared.exceptions import RemoteRequestError, TransientIOError
from shared.helper.HelperConfig import HelperConfig

# text embedded once to find the vector length
DIMENSION_TEXT = "dimension check"


class EmbedClientInterface(HttpClientInterface):
    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)

        # model and embedding config
        self.embed_model = helper_config.get_string_val(f"{self.get_client_type().upper()}_MODEL")
        self.embed_model_max_chars = helper_config.get_number_val(f"{self.get_client_type().upper()}_MODEL_MAX_CHARS", default=0)
        self._dimension: int | None = None

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_client_type(self) -> str:
        """
        Returns the type of the client. E.g. "embed"
        """
        return "embed"

    @property
    def dimension(self) -> int | None:
        """Dimension found by do_detect_dimension(), None before the first check."""
        return self._dimension

    ################ ENDPOINTS ##################
    @abstractmethod
    def get_endpoint_embedding(self) -> str:
        """
        Returns the endpoint path for embedding requests.

        Returns:
            str: The endpoint path for embedding requests (e.g. "/api/embed")
        """
        pass

    ################ PAYLOAD BUILDER ##################
    @abstractmethod
    def get_embed_payload(self, texts: list[str]) -> dict:
        """Build the backend-specific request body for an embedding request.

        Args:
            texts (list[str]): The texts to embed.

        Returns:
            dict: JSON-serialisable request body (e.g. {"model": "...", "input": [...]}).
        """
        pass

    ##########################################
    ################# OTHER ##################
    ##########################################

    @abstractmethod
    def extract_embeddings_from_response(self, response_data: dict) -> list[list[float]]:
        """Extract embedding vectors from a raw embedding API response.

        Response format differs by backend:
        - Ollama /api/embed: {"embeddings": [[...], [...]]}, already ordered
        - OpenAI-compatible: {"data": [{"embedding": [...], "index": 0}]}, needs sorting

        Args:
            response_data (dict): The parsed JSON response body.

        Returns:
            list[list[float]]: Embedding vectors in the same order as the input texts.

        Raises:
            ValueError: If the response format is invalid or embeddings are empty.
        """
        pass

    def _truncate(self, text: str) -> str:
        if self.embed_model_max_chars and len(text) > self.embed_model_max_chars:
            return text[: int(self.embed_model_max_chars)]
        return text

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_embed(self, texts: list[str] | str) -> list[list[float]]:
        """Send an embedding request and return the extracted vectors.

        Normalises the input to a list, truncates each text to the model limit,
        builds the backend-specific payload via get_embed_payload(), sends the
        request, validates the status, and extracts the vectors via
        extract_embeddings_from_response().

        Args:
            texts (list[str] | str): One or more texts to embed.

        Returns:
            list[list[float]]: Embedding vectors in the same order as the inputs.

        Raises:
            TransientIOError: On transport errors, HTTP 429 or 5xx.
            RemoteRequestError: On any other non-200 status.
            ValueError: If the response does not contain valid embeddings.
        """
        texts = [texts] if isinstance(texts, str) else texts
        body = self.get_embed_payload([self._truncate(t) for t in texts])
        response = await self.do_request(method="POST", endpoint=self.get_endpoint_embedding(), json=body)
        if response.status_code != 200:
            self.logging.error(
                "Embedding request failed: status %d, body: %s",
                response.status_code,
                response.text[:200],
            )
            message = "Embedding request failed with status %d." % response.status_code
            if response.status_code == 429 or response.status_code >= 500:
                raise TransientIOError(message)
            raise RemoteRequestError(message, status_code=response.status_code)
        vectors = self.extract_embeddings_from_response(response.json())
        if len(vectors) != len(texts):
            raise ValueError(f"Embedding backend returned {len(vectors)} vectors for {len(texts)} inputs.")
        return vectors

    async def embed_text(self, text: str) -> list[float]:
        """Embed a single text.

        Args:
            text (str): The text to embed.

        Returns:
            list[float]: The embedding vector.
        """
        vectors = await self.do_embed([text])
        return vectors[0]

    async def do_detect_dimension(self) -> int:
        """Embed a fixed text once and remember the vector length.

        Returns:
            int: The embedding dimension of the configured model.
        """
        if self._dimension is None:
            vector = await self.embed_text(DIMENSION_TEXT)
            self._dimension = len(vector)
            self.logging.info("Embedding model '%s' produces %d-dimensional vectors.", self.embed_model, self._dimension)
        return self._dimension
