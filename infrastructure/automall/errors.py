"""
Provisioning Errors
===================
Every failure the workflow can surface, grouped the way an operator handles them:

  ConfigurationError       → fix the input and re-run (nothing was touched)
  InvalidImageLocatorError → fix the image locator and re-run
  DependencyNotReadyError  → ordering bug in the plan (internal, fatal)
  BackendError             → the cloud rejected a request; re-run once fixed

Any of these aborts the remaining topological order immediately.
"""
from __future__ import annotations


class ProvisioningError(Exception):
    """Base class for everything raised by the provisioning core."""


class ConfigurationError(ProvisioningError):
    """A required input is absent or unusable. Raised before any backend call."""


class InvalidImageLocatorError(ProvisioningError):
    """The registry/repository/tag string cannot be parsed."""


class CycleError(ProvisioningError):
    """The dependency set contains a cycle."""

    def __init__(self, members: list[str]):
        self.members = members
        super().__init__(f"Dependency cycle between: {', '.join(members)}")


class UnknownDependencyError(ProvisioningError):
    """A node depends on a resource id that was never declared."""


class DependencyNotReadyError(ProvisioningError):
    """A runtime attribute was requested before its producer finished creating."""


class SecretNotReadyError(DependencyNotReadyError):
    """A secret field was read before the secret exists."""


class BackendError(ProvisioningError):
    """The resource backend rejected or failed a request."""

    def __init__(self, message: str, code: str | None = None):
        self.code = code
        super().__init__(f"[{code}] {message}" if code else message)


class ZoneNotFoundError(BackendError):
    """The referenced hosted zone does not resolve against the backend."""
