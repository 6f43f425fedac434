from .base import Transport
from .http import HttpTransport
from .stdio import StdioTransport

__all__ = ["HttpTransport", "StdioTransport", "Transport"]
