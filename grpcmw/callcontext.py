"""Request-scoped call contexts, status errors and server stream wrapping."""

from __future__ import annotations

import threading
import time
import weakref
from typing import Any

import grpc

_GO_STYLE_NAMES = {grpc.StatusCode.CANCELLED: "Canceled"}


def _code_name(code: grpc.StatusCode) -> str:
    if code in _GO_STYLE_NAMES:
        return _GO_STYLE_NAMES[code]
    return "".join(part.capitalize() for part in code.name.split("_"))


class StatusError(grpc.RpcError):
    """An error carrying a gRPC status code and a description."""

    def __init__(self, code: grpc.StatusCode, details: str = "") -> None:
        super().__init__(details)
        self.code = code
        self.details = details

    def __str__(self) -> str:
        return f"rpc error: code = {_code_name(self.code)} desc = {self.details}"

    def __repr__(self) -> str:
        return f"StatusError({self.code!r}, {self.details!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StatusError):
            return NotImplemented
        return self.code == other.code and self.details == other.details

    def __hash__(self) -> int:
        return hash((self.code, self.details))


def status_code(err: BaseException | None) -> grpc.StatusCode:
    """Return the gRPC status code of an error; OK for None, UNKNOWN for foreign errors."""
    if err is None:
        return grpc.StatusCode.OK
    if isinstance(err, StatusError):
        return err.code
    code = getattr(err, "code", None)
    if callable(code):
        try:
            result = code()
        except Exception:
            return grpc.StatusCode.UNKNOWN
        if isinstance(result, grpc.StatusCode):
            return result
    return grpc.StatusCode.UNKNOWN


class CallContext:
    """An immutable chain of values with an optional deadline and cancellation."""

    def __init__(self, parent: CallContext | None = None) -> None:
        self._parent = parent
        self._has_value = False
        self._key: Any = None
        self._value: Any = None
        self._deadline: float | None = parent._deadline if parent is not None else None
        self._err: StatusError | None = None
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._children: weakref.WeakSet[CallContext] = weakref.WeakSet()
        if parent is not None:
            parent._register(self)

    def _register(self, child: CallContext) -> None:
        with self._lock:
            self._children.add(child)
            err = self._err
        if err is not None:
            child._cancel_with(err)

    @property
    def deadline(self) -> float | None:
        """The deadline on the time.monotonic() clock, or None."""
        return self._deadline

    def with_value(self, key: Any, value: Any) -> CallContext:
        """Return a child context that maps key to value."""
        child = CallContext(self)
        child._has_value = True
        child._key = key
        child._value = value
        return child

    def value(self, key: Any) -> Any:
        """Return the value bound to key in this context or an ancestor, or None."""
        ctx: CallContext | None = self
        while ctx is not None:
            if ctx._has_value and ctx._key == key:
                return ctx._value
            ctx = ctx._parent
        return None

    def with_timeout(self, timeout: float) -> CallContext:
        """Return a cancellable child whose deadline is at most timeout seconds away."""
        child = CallContext(self)
        candidate = time.monotonic() + timeout
        if child._deadline is None or candidate < child._deadline:
            child._deadline = candidate
        return child

    def with_cancel(self) -> CallContext:
        """Return a child context that can be cancelled on its own."""
        return CallContext(self)

    def cancel(self) -> None:
        """Cancel this context and all contexts derived from it."""
        self._cancel_with(StatusError(grpc.StatusCode.CANCELLED, "context canceled"))

    def _cancel_with(self, err: StatusError) -> None:
        with self._lock:
            if self._err is not None:
                return
            if self._deadline_passed():
                err = self._deadline_error()
            self._err = err
            children = list(self._children)
        self._done.set()
        for child in children:
            child._cancel_with(err)

    def _deadline_passed(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @staticmethod
    def _deadline_error() -> StatusError:
        return StatusError(grpc.StatusCode.DEADLINE_EXCEEDED, "context deadline exceeded")

    def error(self) -> StatusError | None:
        """Return why the context is done, or None while it is still live."""
        if self._err is not None:
            return self._err
        if self._deadline_passed():
            return self._deadline_error()
        return None

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the context is done or timeout seconds pass; return whether it is done."""
        end = None if timeout is None else time.monotonic() + timeout
        while True:
            if self.error() is not None:
                return True
            limits = [t for t in (end, self._deadline) if t is not None]
            if not limits:
                self._done.wait()
                continue
            remaining = min(limits) - time.monotonic()
            if remaining <= 0:
                return self.error() is not None
            self._done.wait(remaining)


class WrappedServerStream:
    """A server stream whose context can be replaced; everything else is delegated."""

    def __init__(self, stream: Any, wrapped_context: CallContext) -> None:
        self.stream = stream
        self.wrapped_context = wrapped_context

    def context(self) -> CallContext:
        return self.wrapped_context

    def __getattr__(self, name: str) -> Any:
        if name == "stream":
            raise AttributeError(name)
        return getattr(self.stream, name)


def wrap_server_stream(stream: Any) -> WrappedServerStream:
    """Wrap a server stream so its context can be overwritten; wrappers are reused."""
    if isinstance(stream, WrappedServerStream):
        return stream
    return WrappedServerStream(stream, stream.context())