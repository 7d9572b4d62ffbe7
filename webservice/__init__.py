"""
Asynchronous HTTP request units with callback and observer notifications.
"""

from .descriptor import RequestDescriptor
from .errors import (
    ExchangeError,
    InvalidArgument,
    InvalidState,
    StreamWriteFailed,
    TransportError,
    WebServiceError,
)
from .notification import AggregatingObserver, NotificationChannel, RequestObserver
from .queue import RequestQueue
from .request import RequestState, RequestUnit
from .sink import UNAVAILABLE, ResponseSink
from .transport import Exchange, HTTPXTransport, Transport

__all__ = [
    'AggregatingObserver',
    'Exchange',
    'ExchangeError',
    'HTTPXTransport',
    'InvalidArgument',
    'InvalidState',
    'NotificationChannel',
    'RequestDescriptor',
    'RequestObserver',
    'RequestQueue',
    'RequestState',
    'RequestUnit',
    'ResponseSink',
    'StreamWriteFailed',
    'Transport',
    'TransportError',
    'UNAVAILABLE',
    'WebServiceError',
]
