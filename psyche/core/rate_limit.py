"""HTTP-level rate limiting using slowapi.

This guards the public endpoints per client address. Per-principal LLM
throttling is the gateway's TokenBucketRegistry, not this limiter.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

# Rate limiter instance: use remote address as key
limiter = Limiter(key_func=get_remote_address)

INFERENCE_RUN_LIMIT = "30/minute"
