from .base import ProtocolAdapter
from .dammv2 import DammV2Adapter
from .dbc import DbcAdapter
from .dbc_builder import DbcClaimBuilder
from .http import ExitApiClient, ExitApiError, decode_draft, fetch_positions
from .runtime import ProtocolRuntimeResolver

__all__ = [
    "DammV2Adapter",
    "DbcAdapter",
    "DbcClaimBuilder",
    "ExitApiClient",
    "ExitApiError",
    "ProtocolAdapter",
    "ProtocolRuntimeResolver",
    "decode_draft",
    "fetch_positions",
]
