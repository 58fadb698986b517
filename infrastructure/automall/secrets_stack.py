"""
Database Credentials
====================
One Secrets Manager secret holding {"username": ..., "password": ...}. The
password is generated by the backend, never by this code, and never appears
in the plan: consumers embed a SecretFieldRef, and the only way to turn that
into a value is read_secret_field() once the secret exists.
"""
from __future__ import annotations

from automall.backend import LiveState
from automall.errors import SecretNotReadyError
from automall.graph import Resource, ResourceGraph, ResourceKind, SecretFieldRef

# Characters that break connection strings or shell quoting
EXCLUDED_CHARACTERS = "\"@/\\ '"
USERNAME_FIELD = "username"
PASSWORD_FIELD = "password"


class SecretCredentialProvider:
    def __init__(self, graph: ResourceGraph, state: LiveState, prefix: str):
        self._graph = graph
        self._state = state
        self._prefix = prefix

    def create(self, username: str) -> Resource:
        return self._graph.add_node(Resource(
            id="db-credentials",
            kind=ResourceKind.SECRET,
            name=f"{self._prefix}-RdsDbCredentials",
            properties={
                "description": "Generated credentials for the application database",
                "secret_string_template": {USERNAME_FIELD: username},
                "generate_string_key": PASSWORD_FIELD,
                "exclude_characters": EXCLUDED_CHARACTERS,
                "password_length": 32,
            },
        ))

    def field_ref(self, secret: Resource, field: str) -> SecretFieldRef:
        return SecretFieldRef(secret_id=secret.id, field=field)

    def read_secret_field(self, secret: Resource, field: str) -> str:
        """Resolved value of one secret field. Raises SecretNotReadyError before creation."""
        if self._state.backend is None or not self._state.is_ready(secret.id):
            raise SecretNotReadyError(f"Secret {secret.name!r} has not been created yet")
        document = self._state.backend.read_secret(self._state.require(secret.id, "arn"))
        if field not in document:
            raise SecretNotReadyError(f"Secret {secret.name!r} has no field {field!r}")
        return document[field]

    def read_username(self, secret: Resource) -> str:
        return self.read_secret_field(secret, USERNAME_FIELD)

    def read_password(self, secret: Resource) -> str:
        return self.read_secret_field(secret, PASSWORD_FIELD)

    def resolve(self, ref: SecretFieldRef) -> str:
        """Provisioner hook: SecretFieldRef → value."""
        return self.read_secret_field(self._graph.get(ref.secret_id), ref.field)
