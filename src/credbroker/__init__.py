"""Credential broker for third-party integrations.

Connects OAuth 2.0 and API-key providers, keeps their credentials encrypted at
rest under a master key held in an external secret store, and checks that
stored credentials remain usable.
"""

from credbroker.broker import CredentialBroker
from credbroker.config import BrokerSettings, load_settings_from_env

__version__ = "0.1.0"

__all__ = ["BrokerSettings", "CredentialBroker", "load_settings_from_env", "__version__"]
