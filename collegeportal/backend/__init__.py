"""
Backend API client and per-endpoint failure policies.
"""

from .api_client import ApiError, AuthenticationRequiredError, BackendApiClient
from .policies import ENDPOINT_POLICIES, EndpointPolicy, get_policy

__all__ = [
    "ApiError",
    "AuthenticationRequiredError",
    "BackendApiClient",
    "ENDPOINT_POLICIES",
    "EndpointPolicy",
    "get_policy",
]
