"""Client-side request retry interceptors.

Requests are retried automatically based on the gRPC status of the reply.
Unary (1:1) and server streaming (1:n) calls are supported.

The interceptors are disabled by default, so nothing is retried by accident.
Retries are switched on with options, either when the interceptor is created
or per call: ``with_max(5)``. The other defaults are to retry on
``RESOURCE_EXHAUSTED`` and ``UNAVAILABLE`` and to back off linearly for 50ms
with 10% jitter.

In a chain of interceptors, every interceptor that follows the retry
interceptor is called again on each retry.

A unary interceptor is called as ``interceptor(ctx, method, request, invoker,
*call_options)``, where ``invoker(ctx, method, request, *call_options)``
returns the reply or raises. A stream interceptor is called as
``interceptor(ctx, desc, method, streamer, *call_options)``, where
``streamer(ctx, desc, method, *call_options)`` returns a client stream. A
client stream's ``recv_msg()`` returns the next message and raises
``EOFError`` at the end of the stream.

All durations are in seconds.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterator

import grpc

from grpcmw.backoffutils import exponent_base2, jitter_up
from grpcmw.callcontext import CallContext, StatusError, status_code
from grpcmw.metadata import MD, extract_outgoing

_log = logging.getLogger(__name__)

ATTEMPT_METADATA_KEY = "x-retry-attempt"

# RESOURCE_EXHAUSTED: a quota such as a per-RPC limit has been reached.
# UNAVAILABLE: the system is unavailable for now and the client should try again.
DEFAULT_RETRIABLE_CODES: tuple[grpc.StatusCode, ...] = (
    grpc.StatusCode.RESOURCE_EXHAUSTED,
    grpc.StatusCode.UNAVAILABLE,
)

BackoffFunc = Callable[[CallContext, int], float]
OnRetryCallback = Callable[[CallContext, int, BaseException], None]


def backoff_linear_with_jitter(wait_between: float, jitter_fraction: float) -> BackoffFunc:
    """Wait a fixed period, randomly adjusted by up to jitter_fraction of it."""

    def backoff(ctx: CallContext, attempt: int) -> float:
        return jitter_up(wait_between, jitter_fraction)

    return backoff


def backoff_linear(wait_between: float) -> BackoffFunc:
    """Wait a fixed period between calls."""
    return backoff_linear_with_jitter(wait_between, 0.0)


def backoff_exponential(scalar: float) -> BackoffFunc:
    """Wait scalar * 2**(attempt-1): with 0.1s the first retry waits 0.1s, the fifth 1.6s."""

    def backoff(ctx: CallContext, attempt: int) -> float:
        return scalar * exponent_base2(attempt)

    return backoff


def backoff_exponential_with_jitter(scalar: float, jitter_fraction: float) -> BackoffFunc:
    """Exponential backoff with random jitter."""

    def backoff(ctx: CallContext, attempt: int) -> float:
        return jitter_up(scalar * exponent_base2(attempt), jitter_fraction)

    return backoff


def _default_on_retry(ctx: CallContext, attempt: int, err: BaseException) -> None:
    _log.debug("grpc_retry attempt: %d, backoff for %s", attempt, err)


@dataclass
class _Options:
    max: int
    per_call_timeout: float
    include_header: bool
    codes: tuple[grpc.StatusCode, ...]
    backoff_func: BackoffFunc
    on_retry_callback: OnRetryCallback


_DEFAULT_OPTIONS = _Options(
    max=0,
    per_call_timeout=0.0,
    include_header=True,
    codes=DEFAULT_RETRIABLE_CODES,
    backoff_func=backoff_linear_with_jitter(0.050, 0.10),
    on_retry_callback=_default_on_retry,
)


@dataclass(frozen=True)
class CallOption:
    """A call option understood only by the retry interceptors."""

    apply: Callable[[_Options], None]


def with_max(max_retries: int) -> CallOption:
    """Set the maximum number of attempts for this call or interceptor."""

    def apply(opts: _Options) -> None:
        opts.max = max_retries

    return CallOption(apply)


def disable() -> CallOption:
    """Switch retries off; the same as with_max(0)."""
    return with_max(0)


def with_backoff(backoff_func: BackoffFunc) -> CallOption:
    """Set the function that decides how long to wait between attempts."""

    def apply(opts: _Options) -> None:
        opts.backoff_func = backoff_func

    return CallOption(apply)


def with_on_retry_callback(fn: OnRetryCallback) -> CallOption:
    """Set the callback run after each failed attempt."""

    def apply(opts: _Options) -> None:
        opts.on_retry_callback = fn

    return CallOption(apply)


def with_codes(*args: grpc.StatusCode) -> CallOption:
    """Set the status codes that are retried.

    Use with care: non-idempotent calls may be retried. Cancellation and
    deadline errors are never retried this way; see with_per_retry_timeout.
    """
    retry_codes = tuple(args)

    def apply(opts: _Options) -> None:
        opts.codes = retry_codes

    return CallOption(apply)


def with_per_retry_timeout(timeout: float) -> CallOption:
    """Limit the time of each attempt, the first one included.

    The parent context's deadline still bounds the whole call. Zero switches
    the limit off. While it is on, deadline errors of single attempts are retried.
    """

    def apply(opts: _Options) -> None:
        opts.per_call_timeout = timeout

    return CallOption(apply)


@dataclass(frozen=True)
class StreamDesc:
    """Describes a streaming method."""

    stream_name: str = ""
    client_streams: bool = False
    server_streams: bool = False


def _reuse_or_new(opts: _Options, call_options: list[CallOption]) -> _Options:
    if not call_options:
        return opts
    copied = dataclasses.replace(opts)
    for option in call_options:
        option.apply(copied)
    return copied


def _filter_call_options(call_options: tuple[Any, ...]) -> tuple[list[Any], list[CallOption]]:
    grpc_options: list[Any] = []
    retry_options: list[CallOption] = []
    for option in call_options:
        (retry_options if isinstance(option, CallOption) else grpc_options).append(option)
    return grpc_options, retry_options


def _is_context_error(err: BaseException) -> bool:
    return status_code(err) in (grpc.StatusCode.DEADLINE_EXCEEDED, grpc.StatusCode.CANCELLED)


def _is_retriable(err: BaseException, opts: _Options) -> bool:
    if _is_context_error(err):
        return False
    return status_code(err) in opts.codes


def _context_err_to_grpc_err(err: BaseException | None) -> StatusError:
    code = status_code(err)
    if code in (grpc.StatusCode.DEADLINE_EXCEEDED, grpc.StatusCode.CANCELLED):
        details = err.details if isinstance(err, StatusError) else str(err)
        return StatusError(code, details)
    return StatusError(grpc.StatusCode.UNKNOWN, str(err))


def _wait_retry_backoff(attempt: int, parent_ctx: CallContext, opts: _Options) -> None:
    wait_time = opts.backoff_func(parent_ctx, attempt) if attempt > 0 else 0.0
    if wait_time > 0:
        _log.debug("grpc_retry attempt: %d, backoff for %s", attempt, wait_time)
        if parent_ctx.wait(wait_time):
            raise _context_err_to_grpc_err(parent_ctx.error())


def _per_call_context(
    parent_ctx: CallContext, opts: _Options, attempt: int
) -> tuple[CallContext, Callable[[], None] | None]:
    """Return the attempt's context and, if one was created, its cancel function."""
    ctx = parent_ctx
    cancel: Callable[[], None] | None = None
    if opts.per_call_timeout != 0:
        ctx = ctx.with_timeout(opts.per_call_timeout)
        cancel = ctx.cancel
    if attempt > 0 and opts.include_header:
        md: MD = extract_outgoing(ctx).clone().set(ATTEMPT_METADATA_KEY, str(attempt))
        ctx = md.to_outgoing(ctx)
    return ctx, cancel


def _should_stop_on_context_error(
    err: BaseException, parent_ctx: CallContext, opts: _Options, attempt: int
) -> bool | None:
    """Return True to give up, False to retry, None to fall through to the code check."""
    if not _is_context_error(err):
        return None
    if parent_ctx.error() is not None:
        _log.debug(
            "grpc_retry attempt: %d, parent context error: %s", attempt, parent_ctx.error()
        )
        return True
    if opts.per_call_timeout != 0:
        _log.debug("grpc_retry attempt: %d, context error from retry call", attempt)
        return False
    return None


def unary_client_interceptor(*args: CallOption) -> Callable[..., Any]:
    """Return a retrying unary client interceptor; it retries nothing unless configured to."""
    interceptor_opts = _reuse_or_new(_DEFAULT_OPTIONS, list(args))

    def interceptor(
        parent_ctx: CallContext,
        method: str,
        request: Any,
        invoker: Callable[..., Any],
        *call_options: Any,
    ) -> Any:
        grpc_opts, retry_opts = _filter_call_options(call_options)
        opts = _reuse_or_new(interceptor_opts, retry_opts)
        if opts.max == 0:
            return invoker(parent_ctx, method, request, *grpc_opts)
        last_err: BaseException | None = None
        for attempt in range(opts.max):
            _wait_retry_backoff(attempt, parent_ctx, opts)
            call_ctx, cancel = _per_call_context(parent_ctx, opts, attempt)
            try:
                return invoker(call_ctx, method, request, *grpc_opts)
            except Exception as err:
                last_err = err
            finally:
                if cancel is not None:
                    cancel()
            opts.on_retry_callback(parent_ctx, attempt, last_err)
            stop = _should_stop_on_context_error(last_err, parent_ctx, opts, attempt)
            if stop is True:
                raise last_err
            if stop is False:
                continue
            if not _is_retriable(last_err, opts):
                raise last_err
        assert last_err is not None
        raise last_err

    return interceptor


def stream_client_interceptor(*args: CallOption) -> Callable[..., Any]:
    """Return a retrying stream client interceptor for server streaming calls.

    Only server streams (1:n) can be retried, as the messages sent by the client
    are buffered for resending. With retries on, client or bidirectional streams
    fail with UNIMPLEMENTED.
    """
    interceptor_opts = _reuse_or_new(_DEFAULT_OPTIONS, list(args))

    def interceptor(
        parent_ctx: CallContext,
        desc: StreamDesc,
        method: str,
        streamer: Callable[..., Any],
        *call_options: Any,
    ) -> Any:
        grpc_opts, retry_opts = _filter_call_options(call_options)
        opts = _reuse_or_new(interceptor_opts, retry_opts)
        if opts.max == 0:
            return streamer(parent_ctx, desc, method, *grpc_opts)
        if desc.client_streams:
            raise StatusError(
                grpc.StatusCode.UNIMPLEMENTED,
                "grpc_retry: cannot retry on ClientStreams, set grpc_retry.Disable()",
            )

        def streamer_call(ctx: CallContext) -> Any:
            return streamer(ctx, desc, method, *grpc_opts)

        last_err: BaseException | None = None
        for attempt in range(opts.max):
            _wait_retry_backoff(attempt, parent_ctx, opts)
            call_ctx, _ = _per_call_context(parent_ctx, opts, 0)
            try:
                new_stream = streamer(call_ctx, desc, method, *grpc_opts)
            except Exception as err:
                last_err = err
            else:
                return RetryingClientStream(new_stream, opts, parent_ctx, streamer_call)
            opts.on_retry_callback(parent_ctx, attempt, last_err)
            stop = _should_stop_on_context_error(last_err, parent_ctx, opts, attempt)
            if stop is True:
                raise last_err
            if stop is False:
                continue
            if not _is_retriable(last_err, opts):
                raise last_err
        assert last_err is not None
        raise last_err

    return interceptor


class RetryingClientStream:
    """A client stream that re-establishes the call when receiving fails retriably.

    Sent messages are buffered so they can be resent on a new stream.
    """

    def __init__(
        self,
        stream: Any,
        call_opts: _Options,
        parent_ctx: CallContext,
        streamer_call: Callable[[CallContext], Any],
    ) -> None:
        self._stream = stream
        self._call_opts = call_opts
        self._parent_ctx = parent_ctx
        self._streamer_call = streamer_call
        self._buffered_sends: list[Any] = []
        self._was_closed_send = False
        self._lock = threading.Lock()

    @property
    def stream(self) -> Any:
        with self._lock:
            return self._stream

    def _set_stream(self, stream: Any) -> None:
        with self._lock:
            self._stream = stream

    def send_msg(self, message: Any) -> Any:
        with self._lock:
            self._buffered_sends.append(message)
        return self.stream.send_msg(message)

    def close_send(self) -> Any:
        with self._lock:
            self._was_closed_send = True
        return self.stream.close_send()

    def header(self) -> Any:
        return self.stream.header()

    def trailer(self) -> Any:
        return self.stream.trailer()

    def recv_msg(self) -> Any:
        """Return the next message, retrying per policy; raise EOFError at the end."""
        retry, message, last_err = self._receive_and_indicate_retry()
        if not retry:
            return self._finish(message, last_err)
        # Attempt zero was the original stream.
        for attempt in range(1, self._call_opts.max):
            _wait_retry_backoff(attempt, self._parent_ctx, self._call_opts)
            self._call_opts.on_retry_callback(self._parent_ctx, attempt, last_err)
            call_ctx, _ = _per_call_context(self._parent_ctx, self._call_opts, attempt)
            try:
                new_stream = self._reestablish_stream_and_resend_buffer(call_ctx)
            except Exception as err:
                if _is_retriable(err, self._call_opts):
                    continue
                raise
            self._set_stream(new_stream)
            retry, message, last_err = self._receive_and_indicate_retry()
            if not retry:
                return self._finish(message, last_err)
        assert last_err is not None
        raise last_err

    def __iter__(self) -> Iterator[Any]:
        while True:
            try:
                yield self.recv_msg()
            except EOFError:
                return

    @staticmethod
    def _finish(message: Any, err: BaseException | None) -> Any:
        if err is not None:
            raise err
        return message

    def _receive_and_indicate_retry(self) -> tuple[bool, Any, BaseException | None]:
        try:
            message = self.stream.recv_msg()
        except EOFError as eof:
            return False, None, eof
        except Exception as err:
            if _is_context_error(err):
                if self._parent_ctx.error() is not None:
                    _log.debug("grpc_retry parent context error: %s", self._parent_ctx.error())
                    return False, None, err
                if self._call_opts.per_call_timeout != 0:
                    _log.debug("grpc_retry context error from retry call")
                    return True, None, err
            return _is_retriable(err, self._call_opts), None, err
        return False, message, None

    def _reestablish_stream_and_resend_buffer(self, call_ctx: CallContext) -> Any:
        with self._lock:
            buffered = list(self._buffered_sends)
        try:
            new_stream = self._streamer_call(call_ctx)
        except Exception as err:
            _log.debug("grpc_retry failed redialing new stream: %s", err)
            raise
        for message in buffered:
            try:
                new_stream.send_msg(message)
            except Exception as err:
                _log.debug("grpc_retry failed resending message: %s", err)
                raise
        try:
            new_stream.close_send()
        except Exception as err:
            _log.debug("grpc_retry failed CloseSend on new stream %s", err)
            raise
        return new_stream