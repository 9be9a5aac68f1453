from shared.clients.ClientManager import ClientManager
from shared.clients.source.SourceClientInterface import SourceClientInterface


class SourceClientManager(ClientManager):
    """
    Manager class to handle the remote knowledge-source client based on SOURCE_ENGINE.
    """

    client_type = "source"

    def get_client(self) -> SourceClientInterface:
        return self.client
