"""
errors.py – Exception hierarchy shared by every module.
"""

from typing import Optional


class QuotaManagerError(Exception):
    pass


class MalformedBlobError(QuotaManagerError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Malformed encrypted blob: {reason}")


class AuthenticationFailedError(QuotaManagerError):
    def __init__(self):
        super().__init__("Decryption failed: wrong password or corrupted data")


class NotUnlockedError(QuotaManagerError):
    def __init__(self):
        super().__init__("Storage is locked")


class UnknownProviderError(QuotaManagerError, ValueError):
    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unknown provider {provider!r}")


class StorageLoadError(QuotaManagerError):
    def __init__(self, path: str, reason: str):
        self.path = path
        message = f"Cannot load storage document {path}: {reason}"
        super().__init__(message)


class ProviderFetchError(QuotaManagerError):
    def __init__(self, provider: str, account_id: str, reason: Optional[str] = None):
        self.provider = provider
        self.account_id = account_id
        message = f"Usage fetch failed for {provider}/{account_id}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ProviderRefreshError(QuotaManagerError):
    def __init__(self, provider: str, account_id: str):
        self.provider = provider
        self.account_id = account_id
        super().__init__("Token refresh failed")
