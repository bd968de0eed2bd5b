"""Request validating interceptors.

Every message of a call is checked for a validation method: the request of
unary calls and each inbound message of streaming calls. A failed validation
becomes an ``INVALID_ARGUMENT`` status carrying the failure's description.

A message can offer any of these, each raising an exception when invalid:

- ``validate_all()``: report every violation;
- ``validate(all)``: report every violation when ``all`` is true, else stop
  at the first;
- ``validate()``: the legacy form, which cannot choose.

With fail-fast on, ``validate(False)`` or ``validate()`` is used; otherwise
``validate_all()``, ``validate(True)`` or ``validate()``, in that order.

Call shapes: a unary server interceptor is ``interceptor(ctx, request, info,
handler)`` with ``handler(ctx, request)``; a unary client interceptor is
``interceptor(ctx, method, request, invoker, *call_options)``; a stream
server interceptor is ``interceptor(srv, stream, info, handler)`` with
``handler(srv, stream)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

import grpc

from grpcmw.callcontext import CallContext, StatusError

OnValidationErrCallback = Callable[[CallContext, BaseException], None]

_CO_VARARGS = 0x04


@dataclass
class _Options:
    should_fail_fast: bool = False
    on_validation_err_callback: Optional[OnValidationErrCallback] = None


Option = Callable[[_Options], None]


def _evaluate_opts(opts: tuple[Option, ...]) -> _Options:
    evaluated = _Options()
    for option in opts:
        option(evaluated)
    return evaluated


def with_on_validation_err_callback(callback: OnValidationErrCallback) -> Option:
    """Run callback(ctx, err) whenever validation fails."""

    def apply(opts: _Options) -> None:
        opts.on_validation_err_callback = callback

    return apply


def with_fail_fast() -> Option:
    """Stop validating at the first violation; ignored for legacy validate()."""

    def apply(opts: _Options) -> None:
        opts.should_fail_fast = True

    return apply


def _takes_all_flag(method: Callable[..., Any]) -> bool:
    func = getattr(method, "__func__", method)
    code = getattr(func, "__code__", None)
    if code is None:
        return False
    positional = code.co_argcount
    if func is not method and getattr(method, "__self__", None) is not None:
        positional -= 1
    return positional > 0 or bool(code.co_flags & _CO_VARARGS)


def _run_validation(message: Any, should_fail_fast: bool) -> None:
    validate_method = getattr(message, "validate", None)
    if not callable(validate_method):
        validate_method = None
    if should_fail_fast:
        if validate_method is None:
            return
        if _takes_all_flag(validate_method):
            validate_method(False)
        else:
            validate_method()
        return
    validate_all = getattr(message, "validate_all", None)
    if callable(validate_all):
        validate_all()
    elif validate_method is not None:
        if _takes_all_flag(validate_method):
            validate_method(True)
        else:
            validate_method()


def validate(
    ctx: CallContext,
    message: Any,
    should_fail_fast: bool,
    on_validation_err_callback: Optional[OnValidationErrCallback],
) -> None:
    """Validate message; raise an INVALID_ARGUMENT StatusError if it is invalid."""
    try:
        _run_validation(message, should_fail_fast)
    except Exception as err:
        if on_validation_err_callback is not None:
            on_validation_err_callback(ctx, err)
        raise StatusError(grpc.StatusCode.INVALID_ARGUMENT, str(err)) from err


def unary_server_interceptor(*args: Option) -> Callable[..., Any]:
    """Return a unary server interceptor that rejects invalid requests before the handler."""
    opts = _evaluate_opts(args)

    def interceptor(ctx: CallContext, request: Any, info: Any, handler: Callable[..., Any]) -> Any:
        validate(ctx, request, opts.should_fail_fast, opts.on_validation_err_callback)
        return handler(ctx, request)

    return interceptor


def unary_client_interceptor(*args: Option) -> Callable[..., Any]:
    """Return a unary client interceptor that rejects invalid requests before sending."""
    opts = _evaluate_opts(args)

    def interceptor(
        ctx: CallContext,
        method: str,
        request: Any,
        invoker: Callable[..., Any],
        *call_options: Any,
    ) -> Any:
        validate(ctx, request, opts.should_fail_fast, opts.on_validation_err_callback)
        return invoker(ctx, method, request, *call_options)

    return interceptor


class ValidatingServerStream:
    """A server stream that validates every received message; everything else is delegated."""

    def __init__(self, stream: Any, options: _Options) -> None:
        self.stream = stream
        self._options = options

    def recv_msg(self) -> Any:
        """Receive the next message and validate it."""
        message = self.stream.recv_msg()
        validate(
            self.stream.context(),
            message,
            self._options.should_fail_fast,
            self._options.on_validation_err_callback,
        )
        return message

    def __getattr__(self, name: str) -> Any:
        if name in ("stream", "_options"):
            raise AttributeError(name)
        return getattr(self.stream, name)


def stream_server_interceptor(*args: Option) -> Callable[..., Any]:
    """Return a stream server interceptor that validates each inbound message on receipt."""
    opts = _evaluate_opts(args)

    def interceptor(srv: Any, stream: Any, info: Any, handler: Callable[..., Any]) -> Any:
        return handler(srv, ValidatingServerStream(stream, opts))

    return interceptor