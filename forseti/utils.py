"""Shared helpers: data sources, CSV loading, HTTP checks, pagination and geometry."""

from __future__ import annotations

import csv
import io
import math
import re
from dataclasses import dataclass
from datetime import date as _date
from datetime import datetime, timedelta
from datetime import time as _time
from typing import IO, Any, Union
from urllib.parse import SplitResult, unquote, urlsplit
from zoneinfo import ZoneInfo

import paramiko
import requests

DEFAULT_LOCATION = "Europe/Paris"
VEHICLE_CAPACITY = 100
NO_DETAILS = "no details for this error"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded; param=value"

Uri = Union[str, SplitResult]
Seconds = Union[float, int, timedelta]

_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_ERROR_STATUSES = frozenset({401, 404, 500})


class NoDataError(LookupError):
    """Raised when a store has not received any data yet."""


class HttpStatusError(Exception):
    """Raised when a remote service answers with a status other than 200."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"ERROR {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


@dataclass(frozen=True)
class LoadDataOptions:
    """How a delimited file is read.

    ``nb_fields`` > 0 requires that many fields per record, 0 requires every
    record to match the first one, and a negative value disables the check.
    """

    skip_first_line: bool = False
    delimiter: str = ";"
    nb_fields: int = 0


@dataclass(frozen=True)
class Paginate:
    """Pagination block of a paged response."""

    start_page: int = 0
    items_on_page: int = 0
    items_per_page: int = 0
    total_result: int = 0

    def to_dict(self) -> dict[str, int]:
        """Return the JSON form; zero counters are left out."""
        result = {"start_page": self.start_page}
        for key in ("items_on_page", "items_per_page", "total_result"):
            value = getattr(self, key)
            if value:
                result[key] = value
        return result


def _seconds(value: Seconds) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _split(uri: Uri) -> SplitResult:
    return urlsplit(uri) if isinstance(uri, str) else uri


def get_file(uri: Uri, connection_timeout: Seconds) -> IO[bytes]:
    """Fetch the file named by a ``file://`` or ``sftp://`` URI."""
    parts = _split(uri)
    if parts.scheme == "sftp":
        return get_file_with_sftp(parts, connection_timeout)
    if parts.scheme == "file":
        return get_file_with_fs(parts)
    raise ValueError(f"Unsupported protocols {parts.scheme}")


def get_file_with_fs(uri: Uri) -> IO[bytes]:
    """Read a local file into memory."""
    parts = _split(uri)
    with open(unquote(parts.path), "rb") as handle:
        return io.BytesIO(handle.read())


def get_file_with_sftp(uri: Uri, connection_timeout: Seconds) -> IO[bytes]:
    """Read a remote file over SFTP, authenticating with the URI's credentials."""
    parts = _split(uri)
    username = unquote(parts.username or "")
    password = unquote(parts.password or "")
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        client.connect(
            parts.hostname or "",
            port=parts.port or 22,
            username=username,
            password=password,
            timeout=_seconds(connection_timeout),
            allow_agent=False,
            look_for_keys=False,
        )
        sftp = client.open_sftp()
        try:
            with sftp.open(unquote(parts.path), "rb") as remote:
                content = remote.read()
        finally:
            sftp.close()
    finally:
        client.close()
    return io.BytesIO(content)


def load_data(file: IO[Any], consumer: Any, options: LoadDataOptions | None = None) -> None:
    """Feed every record of a delimited file to ``consumer``, then terminate it."""
    options = options or LoadDataOptions()
    location = ZoneInfo(DEFAULT_LOCATION)
    content = file.read()
    if isinstance(content, bytes):
        content = content.decode("utf-8")
    reader = csv.reader(io.StringIO(content, newline=""), delimiter=options.delimiter)
    expected = options.nb_fields if options.nb_fields > 0 else None
    skip = options.skip_first_line
    for record in reader:
        if not record:
            continue
        if options.nb_fields >= 0:
            if expected is None:
                expected = len(record)
            if len(record) != expected:
                raise ValueError(f"record on line {reader.line_num}: wrong number of fields")
        if skip:
            skip = False
            continue
        consumer.consume(record, location)
    consumer.terminate()


def get_http_client(url: Uri, token: str, header: str, connection_timeout: Seconds) -> requests.Response:
    """GET ``url`` with ``token`` in ``header``; raise HttpStatusError unless it answers 200."""
    target = url.geturl() if isinstance(url, SplitResult) else url
    response = requests.get(
        target,
        headers={"content-type": FORM_CONTENT_TYPE, header: token},
        timeout=10 * _seconds(connection_timeout),
    )
    check_response_status(response)
    return response


def check_response_status(response: Any) -> None:
    """Raise HttpStatusError if the response status is not 200."""
    status = response.status_code
    if status == 200:
        return
    if status in _ERROR_STATUSES:
        raise HttpStatusError(status, get_message_error(response.text or ""))
    raise HttpStatusError(status, NO_DETAILS)


def get_message_error(body: str) -> str:
    """Pick the value following a ``message`` key out of an error body."""
    fields = [field for field in re.split(r"[{}:,]", body) if field]
    for index, field in enumerate(fields):
        if "message" in field and index + 1 < len(fields):
            return fields[index + 1].strip().strip('"')
    return NO_DETAILS


def paginate_end_point(size: int, count: int, start_page: int) -> tuple[Paginate, int, int]:
    """Return the pagination block and the slice bounds; the start is -1 for an empty page."""
    start_index = -1
    end_index = size
    if count >= 0 and start_page >= 0:
        first_item = start_page * count
        last_item = first_item + count
        if first_item < size:
            start_index = first_item
            if last_item < size:
                end_index = last_item
    items_on_page = end_index - start_index if start_index >= 0 else 0
    return Paginate(start_page, items_on_page, count, size), start_index, end_index


def string_to_int(value: str, default: int) -> int:
    """Parse a decimal integer, falling back to ``default``."""
    if _INT_RE.fullmatch(value):
        number = int(value)
        if _INT64_MIN <= number <= _INT64_MAX:
            return number
    return default


def _hsin(theta: float) -> float:
    return math.sin(theta / 2) ** 2


def coord_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres between two coordinates."""
    la1, lo1, la2, lo2 = (math.radians(v) for v in (lat1, lon1, lat2, lon2))
    radius = 6378100.0
    h = _hsin(la2 - la1) + math.cos(la1) * math.cos(la2) * _hsin(lo2 - lo1)
    return 2 * radius * math.asin(math.sqrt(h))


def add_date_and_time(date: _date, time: _time | datetime) -> datetime:
    """Join a calendar day and a time of day into one datetime."""
    day = date.date() if isinstance(date, datetime) else date
    clock = time.timetz() if isinstance(time, datetime) else time
    zone = clock.tzinfo
    if zone is None and isinstance(date, datetime):
        zone = date.tzinfo
    return datetime.combine(day, clock.replace(tzinfo=None), tzinfo=zone)


def calculate_occupancy(charge: int) -> int:
    """Occupancy percentage for a vehicle charge."""
    if charge == 0:
        return 0
    product = charge * 100
    quotient = abs(product) // VEHICLE_CAPACITY
    return quotient if product >= 0 else -quotient