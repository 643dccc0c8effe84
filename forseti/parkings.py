"""Live space availability of park-and-ride car parks."""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import IO, Any, Iterable, Mapping, Union
from urllib.parse import SplitResult

from flask import Flask, jsonify, request

from forseti.metrics import PARKINGS_LOADING_DURATION, PARKINGS_LOADING_ERRORS
from forseti.utils import LoadDataOptions, NoDataError, get_file, load_data

logger = logging.getLogger(__name__)

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_DATETIME_RE = re.compile(r"\d{4}-\d{2}-\d{2} \d{1,2}:\d{2}:\d{2}")
_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

Uri = Union[str, SplitResult]


class ParkingNotFoundError(LookupError):
    """Raised when no car park has the requested id."""


def _parse_int(text: str) -> int:
    if _INT_RE.fullmatch(text):
        number = int(text)
        if _INT64_MIN <= number <= _INT64_MAX:
            return number
    raise ValueError(f"invalid integer: {text!r}")


def _parse_datetime(text: str, location: tzinfo) -> datetime:
    if not _DATETIME_RE.fullmatch(text):
        raise ValueError(f"cannot parse {text!r} as a date and time")
    return datetime.strptime(text, "%Y-%m-%d %H:%M:%S").replace(tzinfo=location)


@dataclass
class Parking:
    """Details and free spaces of a park-and-ride car park."""

    id: str
    label: str
    updated_time: datetime
    available_standard_spaces: int
    available_accessible_spaces: int
    total_standard_spaces: int
    total_accessible_spaces: int

    @classmethod
    def from_record(cls, record: list[str], location: tzinfo) -> Parking:
        """Build a car park from one record of the parkings file."""
        if len(record) < 8:
            raise ValueError("Missing field in Parking record")
        updated_time = _parse_datetime(record[2], location)
        available_standard = _parse_int(record[4])
        total_standard = _parse_int(record[5])
        available_accessible = _parse_int(record[6])
        total_accessible = _parse_int(record[7])
        return cls(
            id=record[0],
            label=record[1],
            updated_time=updated_time,
            available_standard_spaces=available_standard,
            available_accessible_spaces=available_accessible,
            total_standard_spaces=total_standard,
            total_accessible_spaces=total_accessible,
        )


@dataclass(frozen=True)
class ParkingResponse:
    """How a car park is shown in a response."""

    id: str
    updated_time: datetime
    available: int
    occupied: int
    available_prm: int
    occupied_prm: int

    @classmethod
    def from_parking(cls, parking: Parking) -> ParkingResponse:
        return cls(
            id=parking.id,
            updated_time=parking.updated_time,
            available=parking.available_standard_spaces,
            occupied=parking.total_standard_spaces - parking.available_standard_spaces,
            available_prm=parking.available_accessible_spaces,
            occupied_prm=parking.total_accessible_spaces - parking.available_accessible_spaces,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "car_park_id": self.id,
            "updated_time": self.updated_time.isoformat(),
            "available": self.available,
            "occupied": self.occupied,
            "available_PRM": self.available_prm,
            "occupied_PRM": self.occupied_prm,
        }


class ParkingLineConsumer:
    """Collects the car parks of a file, keyed by id."""

    def __init__(self) -> None:
        self.parkings: dict[str, Parking] = {}

    def consume(self, line: list[str], location: tzinfo) -> None:
        parking = Parking.from_record(line, location)
        self.parkings[parking.id] = parking

    def terminate(self) -> None:
        """Order the collected car parks by id once all records are read."""
        self.parkings = dict(sorted(self.parkings.items()))


class ParkingsContext:
    """Thread-safe store of the latest car parks."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._parkings: dict[str, Parking] | None = None
        self._last_update = ZERO_TIME

    @property
    def last_parking_update(self) -> datetime:
        with self._lock:
            return self._last_update

    def update_parkings(self, parkings: Mapping[str, Parking] | None) -> None:
        with self._lock:
            self._parkings = dict(parkings or {})
            self._last_update = datetime.now().astimezone()

    def get_parkings(self) -> list[Parking]:
        """All loaded car parks; raise NoDataError before any load."""
        with self._lock:
            if self._parkings is None:
                raise NoDataError("No parkings in the data")
            return list(self._parkings.values())

    def get_parking_by_id(self, parking_id: str) -> Parking:
        """The car park stored under ``parking_id``."""
        with self._lock:
            if self._parkings is None:
                raise NoDataError("No parkings in the data")
            parking = self._parkings.get(parking_id)
        if parking is None:
            raise ParkingNotFoundError(f"No parkings found with id: {parking_id}")
        return parking

    def get_parkings_by_ids(self, ids: Iterable[str]) -> tuple[list[Parking], list[Exception]]:
        """The car parks found, and one error per id that could not be served."""
        parkings: list[Parking] = []
        errors: list[Exception] = []
        for parking_id in ids:
            try:
                parkings.append(self.get_parking_by_id(parking_id))
            except LookupError as exc:
                errors.append(exc)
        return parkings, errors


def _uri_text(uri: Uri) -> str:
    return uri.geturl() if isinstance(uri, SplitResult) else uri


def _seconds(value: float | int | timedelta) -> float:
    return value.total_seconds() if isinstance(value, timedelta) else float(value)


def refresh_parkings(context: ParkingsContext, uri: Uri, connection_timeout: float | timedelta) -> None:
    """Load the parkings file at ``uri`` into ``context``; its first line is a header."""
    begin = time.perf_counter()
    try:
        file: IO[Any] = get_file(uri, connection_timeout)
        consumer = ParkingLineConsumer()
        load_data(file, consumer, LoadDataOptions(skip_first_line=True, delimiter=";", nb_fields=0))
    except Exception:
        PARKINGS_LOADING_ERRORS.inc()
        raise
    context.update_parkings(consumer.parkings)
    PARKINGS_LOADING_DURATION.observe(time.perf_counter() - begin)


def refresh_parkings_loop(
    context: ParkingsContext,
    uri: Uri,
    refresh: float | timedelta,
    connection_timeout: float | timedelta,
    stop_event: threading.Event | None = None,
) -> None:
    """Reload car parks every ``refresh`` until ``stop_event`` is set."""
    interval = _seconds(refresh)
    if not _uri_text(uri) or interval <= 0:
        logger.debug("Parking data refreshing is disabled")
        return
    if stop_event is None:
        stop_event = threading.Event()
    while True:
        try:
            refresh_parkings(context, uri, connection_timeout)
        except Exception as exc:
            logger.error("Error while reloading parking data: %s", exc)
        else:
            logger.debug("Parking data updated")
        if stop_event.wait(interval):
            return


def add_parkings_entry_point(app: Flask | None, context: ParkingsContext) -> Flask:
    """Register ``GET /parkings/P+R`` on ``app``."""
    if app is None:
        app = Flask(__name__)

    def parkings_handler():
        errors: list[str] = []
        if "ids[]" in request.args:
            parkings, failures = context.get_parkings_by_ids(request.args.getlist("ids[]"))
            errors.extend(str(e) for e in failures)
        else:
            try:
                parkings = context.get_parkings()
            except NoDataError as exc:
                parkings = []
                errors.append(str(exc))
        body: dict[str, Any] = {}
        if parkings:
            body["records"] = [ParkingResponse.from_parking(p).to_dict() for p in parkings]
        if errors:
            body["errors"] = errors
        return jsonify(body), 200

    app.add_url_rule("/parkings/P+R", endpoint="parkings", view_func=parkings_handler, methods=["GET"])
    return app