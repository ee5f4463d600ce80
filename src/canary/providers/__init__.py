"""Analysis providers: a closed set of verdict sources behind one contract."""
from typing import Dict, Optional

from .base import AnalysisProvider, InvocationContext, evaluate_conditions
from .credentials import (
    CredentialResolver,
    EnvironmentCredentialResolver,
    FileCredentialResolver,
    MappingCredentialResolver,
    ResolvedCredentials,
)
from .job import JobProvider
from .probe import ProbeProvider
from .query import QueryProvider

PROVIDER_TYPES = {
    QueryProvider.kind: QueryProvider,
    ProbeProvider.kind: ProbeProvider,
    JobProvider.kind: JobProvider,
}


class ProviderRegistry:
    """One provider instance per kind, shared by every analysis run."""

    def __init__(self, providers: Optional[Dict[str, AnalysisProvider]] = None):
        self._providers = dict(providers or {})

    def get(self, kind: str) -> AnalysisProvider:
        if kind not in self._providers:
            if kind not in PROVIDER_TYPES:
                raise KeyError(f"Unknown provider kind: {kind}")
            self._providers[kind] = PROVIDER_TYPES[kind]()
        return self._providers[kind]

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
        self._providers.clear()


__all__ = [
    "AnalysisProvider",
    "InvocationContext",
    "evaluate_conditions",
    "CredentialResolver",
    "EnvironmentCredentialResolver",
    "FileCredentialResolver",
    "MappingCredentialResolver",
    "ResolvedCredentials",
    "JobProvider",
    "ProbeProvider",
    "QueryProvider",
    "PROVIDER_TYPES",
    "ProviderRegistry",
]
