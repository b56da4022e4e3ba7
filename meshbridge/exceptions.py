"""Exception hierarchy shared by the bridge and its store backends."""


class BridgeError(Exception):
    """Base class for every error raised by the bridge."""


class ConfigurationError(BridgeError):
    """Startup configuration is missing or malformed."""


class StoreError(BridgeError):
    """A config store operation failed."""


class StoreUnavailableError(StoreError):
    """The config store could not be reached."""


class ValidationError(StoreError):
    """The store rejected a value that can never be accepted as-is."""


class InvalidPositionError(ValidationError):
    pass


class InvalidBrokerConfigError(ValidationError):
    pass


class BrokerNotFoundError(StoreError):
    """A referenced broker config does not exist."""

    def __init__(self, broker_id):
        super().__init__(f"Broker config not found: {broker_id}")
        self.broker_id = broker_id
