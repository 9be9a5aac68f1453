from abc import abstractmethod
from pathlib import Path

import httpx

from shared.clients.HttpClientInterface import HttpClientInterface
from shared.clients.source.models.KnowledgeItem import RemoteKnowledgeItem, RemoteKnowledgePage
from shared.exceptions import RemoteRequestError, TransientIOError
from shared.helper.HelperConfig import HelperConfig


class SourceClientInterface(HttpClientInterface):
    """Client for the remote source that lists knowledge files of an agent."""

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_client_type(self) -> str:
        """
        Returns the type of the client. E.g. "source"
        """
        return "source"

    @abstractmethod
    def get_owner(self) -> str:
        """
        Returns the owner (agent identity) whose items are listed by default.
        """
        pass

    ################ ENDPOINTS ##################
    @abstractmethod
    def _get_endpoint_knowledge(self) -> str:
        """
        Returns the endpoint path for listing knowledge items.

        Returns:
            str: The endpoint path (e.g. "/api/agents/knowledge/get")
        """
        pass

    ################ PAYLOAD BUILDER ##################
    @abstractmethod
    def get_knowledge_payload(self, owner: str, limit: int, cursor: int | None) -> dict:
        """Build the backend-specific request body for one listing page.

        Args:
            owner (str): The agent identity.
            limit (int): Maximum number of items per page.
            cursor (int | None): Cursor returned for the previous page, None for the first page.

        Returns:
            dict: JSON-serialisable request body.
        """
        pass

    @abstractmethod
    def extract_knowledge_page(self, raw_response: list | dict, limit: int) -> RemoteKnowledgePage:
        """Parse one listing response into a page of items.

        Args:
            raw_response (list | dict): The parsed JSON response body.
            limit (int): The requested page size.

        Returns:
            RemoteKnowledgePage: The items and the next cursor (None when this was the last page).
        """
        pass

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_fetch_knowledge_page(self, owner: str | None = None, limit: int = 100, cursor: int | None = None) -> RemoteKnowledgePage:
        """Fetch one page of knowledge items.

        Args:
            owner (str | None): The agent identity, defaults to the configured owner.
            limit (int): Maximum number of items per page.
            cursor (int | None): Cursor from the previous page.

        Returns:
            RemoteKnowledgePage: One page of items.

        Raises:
            TransientIOError: On transport errors, HTTP 429 or 5xx.
            RemoteRequestError: On any other non-200 status.
        """
        response = await self.do_request(
            method="POST",
            endpoint=self._get_endpoint_knowledge(),
            json=self.get_knowledge_payload(owner or self.get_owner(), limit, cursor),
        )
        if response.status_code != 200:
            self.logging.error(
                "Listing knowledge failed: status %d, body: %s",
                response.status_code,
                response.text[:200],
            )
            message = "Failed to get knowledge items (status %d)." % response.status_code
            if response.status_code == 429 or response.status_code >= 500:
                raise TransientIOError(message)
            raise RemoteRequestError(message, status_code=response.status_code)
        return self.extract_knowledge_page(response.json(), limit)

    async def do_fetch_all_knowledge_items(self, owner: str | None = None, page_size: int = 100) -> list[RemoteKnowledgeItem]:
        """Fetch all knowledge items, following the cursor until the last page.

        Args:
            owner (str | None): The agent identity, defaults to the configured owner.
            page_size (int): Items requested per page.

        Returns:
            list[RemoteKnowledgeItem]: All remote items in remote order.
        """
        items: list[RemoteKnowledgeItem] = []
        cursor: int | None = None
        while True:
            page = await self.do_fetch_knowledge_page(owner=owner, limit=page_size, cursor=cursor)
            items.extend(page.items)
            if page.next_cursor is None:
                break
            cursor = page.next_cursor
        self.logging.debug("Fetched %d remote knowledge items.", len(items))
        return items

    async def do_download(self, url: str, target: Path) -> int:
        """Stream a remote file to disk.

        Args:
            url (str): Absolute URL of the file.
            target (Path): Destination path, overwritten if it exists.

        Returns:
            int: Number of bytes written.

        Raises:
            TransientIOError: On transport errors, HTTP 429 or 5xx.
            RemoteRequestError: On any other non-2xx status.
        """
        client = self._require_client()
        written = 0
        try:
            async with client.stream("GET", url, timeout=self.timeout) as response:
                if response.status_code >= 300:
                    message = f"Download of {url} failed with status {response.status_code}"
                    if response.status_code == 429 or response.status_code >= 500:
                        raise TransientIOError(message)
                    raise RemoteRequestError(message, status_code=response.status_code)
                with open(target, "wb") as fh:
                    async for chunk in response.aiter_bytes():
                        fh.write(chunk)
                        written += len(chunk)
        except httpx.TransportError as e:
            raise TransientIOError(f"Download of {url} failed: {e}") from e
        return written
