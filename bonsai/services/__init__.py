"""Services package."""
from bonsai.services.encryption import encryption_service, generate_fernet_key
from bonsai.services.storage import storage_service, StorageService

__all__ = [
    "encryption_service",
    "generate_fernet_key",
    "storage_service",
    "StorageService",
]
