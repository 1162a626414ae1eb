"""Service adapters.

Each adapter wraps one external service behind the uniform fetch / act /
classify-error interface defined in ``autoflow.adapters.base``.
"""

from autoflow.adapters.base import (
    ActionError,
    AdapterError,
    AdapterRegistry,
    AuthenticationError,
    BaseAdapter,
    FetchError,
    RateLimitError,
)

# Import adapters to trigger registration via @AdapterRegistry.register decorator
from autoflow.adapters.notion import NotionAdapter  # noqa: F401
from autoflow.adapters.reddit import RedditAdapter  # noqa: F401
from autoflow.adapters.slack import SlackAdapter  # noqa: F401

__all__ = [
    "ActionError",
    "AdapterError",
    "AdapterRegistry",
    "AuthenticationError",
    "BaseAdapter",
    "FetchError",
    "RateLimitError",
    "NotionAdapter",
    "RedditAdapter",
    "SlackAdapter",
]
