"""Provider modules for fetching repository metadata from external hosts."""

from repowatch.providers.base import BaseProvider, RepoHandle
from repowatch.providers.credentials import Credential, CredentialPool
from repowatch.providers.registry import ProviderRegistry

__all__ = ["BaseProvider", "Credential", "CredentialPool", "ProviderRegistry", "RepoHandle"]
