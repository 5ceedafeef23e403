"""KIS Open API REST access."""

from kisbroker.broker.auth import KisAuthApi
from kisbroker.broker.rest_client import BrokerRestClient
from kisbroker.broker.transport import KisTransport

__all__ = ["KisAuthApi", "BrokerRestClient", "KisTransport"]
