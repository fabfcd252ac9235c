"""LeMedia API module.

Provides the async client the bot uses to talk to the LeMedia web application
on behalf of a linked user: search, requests, admin triage, service health,
trending titles and recently added library items.
"""

from src.media.lemedia import (
    ActionResult,
    LeMediaAuthError,
    LeMediaClient,
    LeMediaError,
    LeMediaUnavailableError,
    NewStuffItem,
    RequestItem,
    RequestOutcome,
    SearchResult,
    ServiceDetail,
    SubmitResult,
    TrendingItem,
)

__all__ = [
    "LeMediaClient",
    "LeMediaError",
    "LeMediaAuthError",
    "LeMediaUnavailableError",
    "ActionResult",
    "NewStuffItem",
    "RequestItem",
    "RequestOutcome",
    "SearchResult",
    "ServiceDetail",
    "SubmitResult",
    "TrendingItem",
]
