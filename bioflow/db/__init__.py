from .call_log import CallLogDB
from .models import ProviderCall

__all__ = [
    "CallLogDB",
    "ProviderCall",
]
