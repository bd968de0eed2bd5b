"""Client-side timeout interceptor.

The interceptor gives every unary call a deadline of its own. A call that
takes longer fails with ``DEADLINE_EXCEEDED``.

A unary interceptor is called as ``interceptor(ctx, method, request, invoker,
*call_options)``, where ``invoker(ctx, method, request, *call_options)``
returns the reply or raises. Durations are in seconds.
"""

from __future__ import annotations

from typing import Any, Callable

from grpcmw.callcontext import CallContext


def unary_client_interceptor(timeout: float) -> Callable[..., Any]:
    """Return a unary client interceptor that limits each call to timeout seconds."""

    def interceptor(
        ctx: CallContext,
        method: str,
        request: Any,
        invoker: Callable[..., Any],
        *call_options: Any,
    ) -> Any:
        timed_ctx = ctx.with_timeout(timeout)
        try:
            return invoker(timed_ctx, method, request, *call_options)
        finally:
            timed_ctx.cancel()

    return interceptor