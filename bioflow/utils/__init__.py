from .retry import call_with_retry, compute_backoff

__all__ = ["call_with_retry", "compute_backoff"]
