# grpcmw

Interceptors and helpers for gRPC clients and servers. They cover retries with
backoff, per-call timeouts, request validation and metadata handling.

All durations are given in seconds, as `float`.

## Installation

```
pip install grpcmw
```

## Modules

- `grpcmw.callcontext`
  - `CallContext` is a chain of values with an optional deadline and
    cancellation. It offers `with_value`, `value`, `with_timeout`,
    `with_cancel`, `cancel`, `error`, `wait` and `deadline`. Cancelling a
    context also cancels every context derived from it.
  - `StatusError` is an exception that carries a `grpc.StatusCode` and
    details. Its text reads `rpc error: code = ... desc = ...`.
  - `status_code(err)` returns:
    - `OK` for `None`;
    - the error's code for a `StatusError` or a grpc error with `code()`;
    - `UNKNOWN` for anything else.
  - `wrap_server_stream(stream)` returns a `WrappedServerStream` whose
    `wrapped_context` can be replaced. All other attributes are delegated to
    the wrapped stream. A stream that is already wrapped is returned unchanged.
- `grpcmw.metadata`
  - `MD` is a `dict` that maps lower-case keys to lists of strings. It offers
    `get`, `set`, `add`, `delete` and `clone`.
  - `to_incoming` and `to_outgoing` attach an `MD` to a `CallContext`.
    `extract_incoming` and `extract_outgoing` read it back, and return an
    empty `MD` when the context has none.
  - Keys are lower-cased. Values of keys ending in `-bin` are base64-encoded.
- `grpcmw.backoffutils`
  - `jitter_up(duration, jitter)` returns a random value in
    `[duration * (1 - jitter), duration * (1 + jitter)]`.
  - `exponent_base2(a)` returns `2**(a-1)`, and `0` when `a` is `0`.
- `grpcmw.retry`: client interceptors that retry unary and server-streaming
  calls.
- `grpcmw.timeout`: a unary client interceptor that gives each call a deadline.
- `grpcmw.validator`: interceptors that validate messages and reject invalid
  ones with `INVALID_ARGUMENT`.

## Interceptor call shapes

The interceptors are plain callables that take a `CallContext`:

- A unary client interceptor is called as
  `interceptor(ctx, method, request, invoker, *call_options)`. Here
  `invoker(ctx, method, request, *call_options)` returns the reply or raises.
- A stream client interceptor is called as
  `interceptor(ctx, desc, method, streamer, *call_options)`. Here
  `streamer(ctx, desc, method, *call_options)` returns a client stream, and
  the stream's `recv_msg()` raises `EOFError` at the end.
- A unary server interceptor is called as `interceptor(ctx, request, info, handler)`.
- A stream server interceptor is called as `interceptor(srv, stream, info, handler)`.

## Retries

Retries are off by default. Turn them on with `with_max`, either when you
create the interceptor or as a call option:

```python
import grpc
from grpcmw import retry

interceptor = retry.unary_client_interceptor(
    retry.with_max(3),
    retry.with_codes(grpc.StatusCode.UNAVAILABLE, grpc.StatusCode.DATA_LOSS),
    retry.with_backoff(retry.backoff_linear(0.05)),
)

# Options passed with the call override the interceptor's options for that call.
reply = interceptor(ctx, "/pkg.Service/Method", request, invoker, retry.with_max(5))
```

Call options that are not `retry.CallOption` are passed through to the invoker.

The defaults are:

- retry on `RESOURCE_EXHAUSTED` and `UNAVAILABLE`
  (`retry.DEFAULT_RETRIABLE_CODES`);
- a 50 ms linear backoff with 10 % jitter.

Cancellation and deadline errors are never retried through `with_codes`.

The other options are:

- `with_per_retry_timeout(seconds)` gives each attempt its own deadline.
  Attempts that run out of that deadline are retried.
- `with_on_retry_callback(fn)` calls `fn(ctx, attempt, err)` after each failed
  attempt.
- `disable()` is the same as `with_max(0)`.

Attempts after the first carry the outgoing metadata key `x-retry-attempt`
(`retry.ATTEMPT_METADATA_KEY`). The key holds the attempt number.

The backoff functions are `backoff_linear`, `backoff_linear_with_jitter`,
`backoff_exponential` and `backoff_exponential_with_jitter`. Each takes
`(ctx, attempt)` and returns the wait in seconds. A backoff wait ends early
with a `StatusError` if the parent context is cancelled or runs out of time.

`stream_client_interceptor` retries server-streaming calls and returns a
`RetryingClientStream`. This stream:

- buffers the messages passed to `send_msg`;
- when `recv_msg` fails with a retriable error, opens a new stream, resends
  the buffered messages and calls `close_send` on it;
- can be iterated until the end of the stream.

While retries are enabled, a `StreamDesc` with `client_streams=True` is
refused with `UNIMPLEMENTED`.

Retry progress is logged at debug level on the `grpcmw.retry` logger.

## Timeouts

```python
from grpcmw import timeout

interceptor = timeout.unary_client_interceptor(0.1)
```

Each call runs under a child context with a deadline 0.1 seconds away. The
child context is cancelled when the call returns.

## Validation

A message is validated through the first method it has, in this order:

- without fail-fast: `validate_all()`, then `validate(True)`, then `validate()`;
- with `with_fail_fast()`: `validate(False)` or `validate()`.

A method raises to report an invalid message. The error becomes a
`StatusError(INVALID_ARGUMENT, str(err))`. `with_on_validation_err_callback(fn)`
calls `fn(ctx, err)` first.

```python
from grpcmw import validator

server_interceptor = validator.unary_server_interceptor(validator.with_fail_fast())
client_interceptor = validator.unary_client_interceptor()
stream_interceptor = validator.stream_server_interceptor()
```

The stream interceptor passes the handler a `ValidatingServerStream`. Its
`recv_msg()` validates each message as it is received. `validator.validate(...)`
can also be called on its own.

## Metadata

```python
from grpcmw.metadata import extract_incoming

md = extract_incoming(server_ctx).clone("authorization", "x-custom")
client_ctx = md.set("x-client-header", "2").set("x-another", "3").to_outgoing(server_ctx)
```

## What this package does not do

- It does not register its interceptors with `grpc` channels or servers
  through grpcio's interceptor classes. You call the interceptors yourself in
  the shapes above.
- It has no monitoring, metrics or call-reporting interceptors.
- It has no rate limiting, authentication or logging interceptors.