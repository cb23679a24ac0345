"""Salesforce adapter and its credential checks."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Tuple

REQUIRED_ENV_VARS: Tuple[str, ...] = ("SF_USERNAME", "SF_PASSWORD", "SF_SECURITY_TOKEN")


class SalesforceAdapterError(RuntimeError):
    pass


class SalesforceAdapterConfigError(SalesforceAdapterError):
    """Credentials are not present in the environment."""


@dataclass(frozen=True)
class SalesforceAdapterReadiness:
    missing_env_vars: Tuple[str, ...] = ()

    @property
    def status(self) -> str:
        return "missing-env" if self.missing_env_vars else "ready"

    def as_dict(self) -> dict[str, object]:
        messages = []
        if self.missing_env_vars:
            messages.append("Missing required Salesforce env vars: " + ", ".join(self.missing_env_vars))
        return {"status": self.status, "missing_env_vars": list(self.missing_env_vars), "messages": messages}


def check_salesforce_adapter_readiness(env: Mapping[str, str] | None = None) -> SalesforceAdapterReadiness:
    env = os.environ if env is None else env
    return SalesforceAdapterReadiness(tuple(sorted(name for name in REQUIRED_ENV_VARS if not env.get(name))))


def ensure_salesforce_adapter_ready(env: Mapping[str, str] | None = None) -> SalesforceAdapterReadiness:
    readiness = check_salesforce_adapter_readiness(env)
    if readiness.missing_env_vars:
        raise SalesforceAdapterConfigError(
            "Salesforce adapter is missing required env vars: " + ", ".join(readiness.missing_env_vars)
        )
    return readiness


from .adapter import SalesforceAdapter  # noqa: E402

__all__ = [
    "REQUIRED_ENV_VARS",
    "SalesforceAdapter",
    "SalesforceAdapterError",
    "SalesforceAdapterConfigError",
    "SalesforceAdapterReadiness",
    "check_salesforce_adapter_readiness",
    "ensure_salesforce_adapter_ready",
]
