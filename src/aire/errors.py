"""
Exception hierarchy for aire
"""


class AireError(Exception):
    """Base exception for all aire errors"""


class ConfigurationError(AireError):
    """Invalid or inconsistent configuration"""


class StoreError(AireError):
    """Base exception for persistence errors"""


class StoreConnectionError(StoreError):
    """Exception for store connection failures"""


class StoreSerializationError(StoreError):
    """Exception for record serialization/deserialization failures"""


class DeliveryError(AireError):
    """A notification transport could not deliver a payload"""


class ActionError(AireError):
    """A response action implementation could not be executed"""
