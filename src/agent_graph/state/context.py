"""Immutable per-run request context."""
import uuid
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

KNOWN_FIELDS = ("user_id", "session_id", "trace_id", "event_time", "auth_token")

# Request keys that never become context fields
RESERVED_REQUEST_KEYS = frozenset({"inputs", "raw_fields"})


class Context(BaseModel):
    """
    Context for one run of a flow.

    Built once from the inbound request and never mutated afterwards.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str | None = Field(default=None, description="Calling user")
    session_id: str | None = Field(default=None, description="Conversation/session id")
    trace_id: str = Field(..., description="Trace ID for observability")
    event_time: datetime = Field(..., description="When the request was received")
    auth_token: SecretStr | None = Field(default=None, description="Caller credential")
    raw_fields: Mapping[str, Any] = Field(
        default_factory=dict,
        description="Request fields with no dedicated attribute (read-only)",
    )

    @field_validator("raw_fields")
    @classmethod
    def _freeze_raw_fields(cls, v: Mapping[str, Any]) -> Mapping[str, Any]:
        return MappingProxyType(dict(v))

    def get(self, name: str, default: Any = None) -> Any:
        """
        Look up a context field by name.

        Known fields win over raw fields of the same name.
        """
        if name in KNOWN_FIELDS:
            value = getattr(self, name)
            if isinstance(value, SecretStr):
                return value.get_secret_value()
            return default if value is None else value
        return self.raw_fields.get(name, default)

    def has(self, name: str) -> bool:
        """Return True if the field is present and not None."""
        return self.get(name) is not None

    def template_values(self) -> dict[str, Any]:
        """
        Values usable in state key templates.

        The auth token is never exposed to templates.
        """
        values = dict(self.raw_fields)
        values.update({
            "user_id": self.user_id,
            "session_id": self.session_id,
            "trace_id": self.trace_id,
            "event_time": self.event_time.isoformat(),
        })
        return values

    def public_dict(self) -> dict[str, Any]:
        """Context as a plain dict without the auth token."""
        return {**self.template_values(), "raw_fields": dict(self.raw_fields)}


def new_context(request: Mapping[str, Any]) -> Context:
    """
    Build the run context from an inbound request.

    Known fields are taken from the request; every other key (except the
    boundary 'inputs') goes into raw_fields, merged with an explicit
    'raw_fields' mapping. trace_id and event_time get generated defaults
    when absent.

    Args:
        request: Inbound request mapping

    Returns:
        Frozen Context
    """
    raw_fields: dict[str, Any] = dict(request.get("raw_fields") or {})
    for key, value in request.items():
        if key not in KNOWN_FIELDS and key not in RESERVED_REQUEST_KEYS:
            raw_fields[key] = value

    return Context(
        user_id=request.get("user_id"),
        session_id=request.get("session_id"),
        trace_id=request.get("trace_id") or uuid.uuid4().hex,
        event_time=request.get("event_time") or datetime.now(timezone.utc),
        auth_token=request.get("auth_token"),
        raw_fields=raw_fields,
    )
