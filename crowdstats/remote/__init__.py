from .errors import (
    RemoteSourceError,
    RemoteQueryRejected,
    FirstPageFailure,
    SchemaNotFound,
)
from .query import RecordQuery, quote_literal
from .client import RemoteSource, HttpRemoteSource

__all__ = [
    "RemoteSourceError",
    "RemoteQueryRejected",
    "FirstPageFailure",
    "SchemaNotFound",
    "RecordQuery",
    "quote_literal",
    "RemoteSource",
    "HttpRemoteSource",
]
