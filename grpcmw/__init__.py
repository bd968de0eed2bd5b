"""Interceptors and helpers for gRPC: call contexts, metadata, backoff, retries, timeouts and validation."""

__version__ = "0.1.0"

__all__ = ["backoffutils", "callcontext", "metadata", "retry", "timeout", "validator"]