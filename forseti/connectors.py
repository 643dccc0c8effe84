"""Description of an external data connector."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum


class ConnectorType(str, Enum):
    """Kinds of data source a service can be fed from."""

    GTFS_RT = "gtfsrt"
    ODITI = "oditi"


@dataclass(frozen=True)
class Connector:
    """Where and how to fetch one external source; immutable once built."""

    files_uri: str
    url: str
    token: str
    refresh_time: timedelta
    connection_timeout: timedelta
    header: str = ""