class MalformedPayload(ValueError):
    """Inbound telemetry that is not a JSON object."""

class InvalidState(ValueError):
    """Pin control request with a bad pin name or a state other than 0/1."""

class InvalidConfig(ValueError):
    """Configuration update that fails validation."""

class StorageError(IOError):
    """Persisting records, pin states or the config file failed."""

class TransportError(RuntimeError):
    """Command could not be delivered to the device."""
