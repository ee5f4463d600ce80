"""Credential resolution capability.

Providers never look secrets up themselves. The hosting process builds a
``CredentialResolver`` and the analysis runner resolves a metric's declared
``SecretRef`` bindings through it at invocation time, producing
``ResolvedCredentials`` that live only inside the invocation context.
"""
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Mapping, Optional

from pydantic import SecretStr

from src.canary.core.errors import CredentialError
from src.canary.models.schemas import SecretRef

REDACTED = "***"


class CredentialResolver(ABC):
    @abstractmethod
    def resolve(self, ref: SecretRef) -> str:
        """Return the secret value for ``ref`` or raise CredentialError."""
        pass

    def resolve_bindings(self, bindings: Mapping[str, SecretRef]) -> "ResolvedCredentials":
        return ResolvedCredentials(
            {binding: SecretStr(self.resolve(ref)) for binding, ref in bindings.items()}
        )


class MappingCredentialResolver(CredentialResolver):
    """Resolves from an explicit mapping keyed by ``name`` or ``name/key``."""

    def __init__(self, secrets: Mapping[str, str]):
        self._secrets = dict(secrets)

    def resolve(self, ref: SecretRef) -> str:
        try:
            return self._secrets[str(ref)]
        except KeyError:
            raise CredentialError(f"Secret '{ref}' is not available") from None


class EnvironmentCredentialResolver(CredentialResolver):
    """Resolves from an environment snapshot handed in by the host.

    ``SecretRef(name="grafana", key="token")`` maps to ``GRAFANA_TOKEN``.
    """

    def __init__(self, environ: Mapping[str, str], prefix: str = ""):
        self._environ = dict(environ)
        self._prefix = prefix

    @staticmethod
    def variable_name(ref: SecretRef, prefix: str = "") -> str:
        parts = [ref.name] + ([ref.key] if ref.key else [])
        return prefix + "_".join(parts).replace("-", "_").replace(".", "_").upper()

    def resolve(self, ref: SecretRef) -> str:
        variable = self.variable_name(ref, self._prefix)
        value = self._environ.get(variable)
        if value is None:
            raise CredentialError(f"Secret '{ref}' is not available (expected {variable})")
        return value


class FileCredentialResolver(CredentialResolver):
    """Resolves mounted secrets laid out as ``<root>/<name>/<key>``."""

    def __init__(self, root: str, default_key: str = "value"):
        self._root = Path(root)
        self._default_key = default_key

    def resolve(self, ref: SecretRef) -> str:
        path = self._root / ref.name / (ref.key or self._default_key)
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError:
            raise CredentialError(f"Secret '{ref}' is not available") from None


class ResolvedCredentials:
    """Secret values bound to names for the duration of one invocation."""

    def __init__(self, values: Optional[Dict[str, SecretStr]] = None):
        self._values = dict(values or {})

    def __repr__(self) -> str:
        return f"ResolvedCredentials({sorted(self._values)})"

    def __len__(self) -> int:
        return len(self._values)

    def get(self, binding: str) -> str:
        try:
            return self._values[binding].get_secret_value()
        except KeyError:
            raise CredentialError(f"Credential binding '{binding}' was not resolved") from None

    def as_env(self) -> Dict[str, str]:
        """Environment bindings for a sandboxed check process."""
        return {name: secret.get_secret_value() for name, secret in self._values.items()}

    def redact(self, text: str) -> str:
        """Replace any resolved secret value appearing in ``text``."""
        for secret in self._values.values():
            value = secret.get_secret_value()
            if value:
                text = text.replace(value, REDACTED)
        return text
