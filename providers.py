"""
providers.py – Contract for provider adapters.

Each provider (Antigravity, GitHub Copilot, Z.ai Coding) is reached through
an adapter that owns its HTTP calls and OAuth flow.  The core only depends
on the methods below:

  fetch_usage(account)         -> usage snapshot; may raise
  refresh_token(refresh_token) -> TokenBundle, or None on definitive failure
  login()                      -> LoginResult (OAuth providers)
  validate_credential(api_key) -> bool (API-key providers)

Adapters receive the whole stored account and pick the credential they
need from it (the account for Antigravity, ``access_token`` for GitHub
Copilot, ``api_key`` for Z.ai).
"""

from typing import Any, Optional

from models import Account, LoginResult, TokenBundle


class ProviderAdapter:
    """Base class for provider adapters; override what the provider supports."""

    provider_id = ""

    # OAuth-backed providers set this so expiring tokens are refreshed.
    supports_refresh = False

    async def fetch_usage(self, account: Account) -> Any:
        raise NotImplementedError

    async def refresh_token(self, refresh_token: str) -> Optional[TokenBundle]:
        return None

    async def login(self) -> LoginResult:
        return LoginResult(success=False, error=f"{self.provider_id} does not support interactive login")

    async def validate_credential(self, credential: str) -> bool:
        return True
