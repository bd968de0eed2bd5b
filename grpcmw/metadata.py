"""Convenience helpers for gRPC metadata carried in call contexts.

Incoming metadata can be copied into outgoing metadata in one line::

    md = extract_incoming(server_ctx).clone(":authorization", ":custom")
    client_ctx = md.set("x-client-header", "2").set("x-another", "3").to_outgoing(ctx)
"""

from __future__ import annotations

import base64

from grpcmw.callcontext import CallContext

_BIN_HDR_SUFFIX = "-bin"
_INCOMING_KEY = object()
_OUTGOING_KEY = object()


def _encode_key_value(key: str, value: str) -> tuple[str, str]:
    key = key.lower()
    if key.endswith(_BIN_HDR_SUFFIX):
        return key, base64.b64encode(value.encode()).decode("ascii")
    return key, value


class MD(dict):
    """Metadata: a mapping of lower-case keys to lists of string values."""

    def clone(self, *args: str) -> MD:
        """Deep-copy the metadata, keeping only the given keys (case-insensitive) if any."""
        allowed = {key.casefold() for key in args}
        return MD(
            (key, list(values))
            for key, values in self.items()
            if not allowed or key.casefold() in allowed
        )

    def to_outgoing(self, ctx: CallContext) -> CallContext:
        """Return a child of ctx carrying this metadata for dispatch by a client."""
        return ctx.with_value(_OUTGOING_KEY, self)

    def to_incoming(self, ctx: CallContext) -> CallContext:
        """Return a child of ctx carrying this metadata as received by a server."""
        return ctx.with_value(_INCOMING_KEY, self)

    def get(self, key: str) -> str:  # type: ignore[override]
        """Return the first value for key, or an empty string."""
        encoded, _ = _encode_key_value(key, "")
        values = self[encoded] if encoded in self else None
        return values[0] if values else ""

    def delete(self, key: str) -> MD:
        """Remove all values for key."""
        encoded, _ = _encode_key_value(key, "")
        self.pop(encoded, None)
        return self

    def set(self, key: str, value: str) -> MD:
        """Replace all values for key with value."""
        encoded, encoded_value = _encode_key_value(key, value)
        self[encoded] = [encoded_value]
        return self

    def add(self, key: str, value: str) -> MD:
        """Append value to the values for key."""
        encoded, encoded_value = _encode_key_value(key, value)
        self.setdefault(encoded, []).append(encoded_value)
        return self


def extract_incoming(ctx: CallContext) -> MD:
    """Return the incoming metadata of ctx, or an empty MD."""
    md = ctx.value(_INCOMING_KEY)
    return md if md is not None else MD()


def extract_outgoing(ctx: CallContext) -> MD:
    """Return the outgoing metadata of ctx, or an empty MD."""
    md = ctx.value(_OUTGOING_KEY)
    return md if md is not None else MD()