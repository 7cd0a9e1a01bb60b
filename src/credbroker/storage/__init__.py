"""Persistence layer for encrypted credential records and service metadata.

Import these directly when needed:
    from credbroker.storage.database import Database, DatabaseConfig
    from credbroker.storage.models import CredentialRecordModel, ServiceMetadataModel
"""
