from .retry import compute_backoff, retry_delay_seconds

__all__ = ["compute_backoff", "retry_delay_seconds"]
