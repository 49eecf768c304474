"""Remote system clients -- Phorest (source) and GHL (destination).

Exports the abstract interfaces and the httpx-backed implementations.
"""

from src.app.sync.remote.adapter import (
    ContactPage,
    DestinationClient,
    RemoteAPIError,
    SourceClient,
    SourcePage,
    classify_error,
    error_code_of,
)
from src.app.sync.remote.ghl import GHLClient
from src.app.sync.remote.phorest import PhorestClient

__all__ = [
    "ContactPage",
    "DestinationClient",
    "GHLClient",
    "PhorestClient",
    "RemoteAPIError",
    "SourceClient",
    "SourcePage",
    "classify_error",
    "error_code_of",
]
