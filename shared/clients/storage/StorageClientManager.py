from shared.clients.ClientManager import ClientManager
from shared.clients.storage.StorageClientInterface import StorageClientInterface


class StorageClientManager(ClientManager):
    """
    Manager class to handle the storage client based on STORAGE_ENGINE ("postgres" or "sqlite").
    """

    client_type = "storage"

    def get_client(self) -> StorageClientInterface:
        return self.client
