from shared.clients.ClientInterface import ClientInterface
from shared.helper.HelperConfig import HelperConfig


class ClientManager:
    """
    Instantiates the client of one client type based on the ``<TYPE>_ENGINE`` env variable.

    The engine "postgres" of client type "storage" resolves to the class
    ``StorageClientPostgres`` in ``shared.clients.storage.postgres.StorageClientPostgres``.
    """

    client_type: str = ""

    def __init__(self, helper_config: HelperConfig):
        self.helper_config = helper_config
        self.logging = helper_config.get_logger()
        self.client = self._initialize_client()

    def _get_engine_from_env(self) -> str:
        """
        Reads the engine from ENV configuration.

        Returns:
            str: The name of the engine, capitalized (e.g. "Postgres").

        Raises:
            ValueError: If no engine is specified in the configuration.
        """
        engine = self.helper_config.get_string_val(f"{self.client_type.upper()}_ENGINE")
        if not engine:
            raise ValueError(f"No {self.client_type} engine specified in configuration.")

        #lowercase all and uppcercase first letter for better comparison and display
        engine = engine.strip().lower()
        engine = engine.capitalize()
        return engine

    def _initialize_client(self) -> ClientInterface:
        """
        Initializes the client based on the engine specified in the configuration.

        Returns:
            ClientInterface: An instance of the engine client.

        Raises:
            ValueError: If the specified engine is not supported.
        """
        engine = self._get_engine_from_env()
        prefix = self.client_type.capitalize()
        className = f"{prefix}Client{engine}"
        # try to import the class from shared.clients.{type}.{engine}
        try:
            module = __import__(
                f"shared.clients.{self.client_type}.{engine.lower()}.{className}",
                fromlist=[className],
            )
            client_class = getattr(module, className)
        except (ImportError, AttributeError) as e:
            raise ValueError(f"Unsupported {prefix} engine specified: '{engine}'. Error: {e}")

        client = client_class(helper_config=self.helper_config)
        self.logging.debug("Instantiated %s client for engine: %s", prefix, engine)
        return client

    def get_client(self) -> ClientInterface:
        """
        Returns the instantiated client.

        Returns:
            ClientInterface: The client instance.
        """
        return self.client
