"""Next departures of public transport vehicles at stops."""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from enum import IntEnum
from typing import IO, Any, Iterable, Mapping, Union
from urllib.parse import SplitResult

from flask import Flask, jsonify, request

from forseti.metrics import DEPARTURE_LOADING_DURATION, DEPARTURE_LOADING_ERRORS
from forseti.utils import NoDataError, get_file, load_data

logger = logging.getLogger(__name__)

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_DATETIME_RE = re.compile(r"\d{4}-\d{2}-\d{2} \d{1,2}:\d{2}:\d{2}")

Uri = Union[str, SplitResult]


class DirectionType(IntEnum):
    """Direction of a departure along its route."""

    UNKNOWN = 0
    FORWARD = 1
    BACKWARD = 2
    BOTH = 3

    def __str__(self) -> str:
        return self.name.lower()


def parse_direction_type(value: str) -> DirectionType:
    """Map the source's direction code (``ALL``/``RET``) to a direction."""
    if value == "ALL":
        return DirectionType.FORWARD
    if value == "RET":
        return DirectionType.BACKWARD
    return DirectionType.UNKNOWN


def parse_direction_type_from_navitia(value: str) -> DirectionType:
    """Parse a direction given by a client; an empty value means both."""
    mapping = {
        "forward": DirectionType.FORWARD,
        "backward": DirectionType.BACKWARD,
        "": DirectionType.BOTH,
        "both": DirectionType.BOTH,
        "unknown": DirectionType.UNKNOWN,
    }
    try:
        return mapping[value]
    except KeyError:
        raise ValueError(f"impossible to parse {value}") from None


def _parse_datetime(text: str, location: tzinfo) -> datetime:
    if not _DATETIME_RE.fullmatch(text):
        raise ValueError(f"cannot parse {text!r} as a date and time")
    return datetime.strptime(text, "%Y-%m-%d %H:%M:%S").replace(tzinfo=location)


@dataclass
class Departure:
    """A departure of a public transport vehicle from a stop."""

    line: str
    stop: str
    type: str
    direction: str
    direction_name: str
    datetime: datetime
    direction_type: DirectionType = DirectionType.UNKNOWN

    @classmethod
    def from_record(cls, record: list[str], location: tzinfo) -> Departure:
        """Build a departure from one record of the departures file."""
        if len(record) < 7:
            raise ValueError("Missing field in record")
        when = _parse_datetime(record[5], location)
        direction_type = parse_direction_type(record[9]) if len(record) >= 10 else DirectionType.UNKNOWN
        return cls(
            line=record[1],
            stop=record[0],
            type=record[4],
            direction=record[6],
            direction_name=record[2],
            datetime=when,
            direction_type=direction_type,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form; an unknown direction type is left out."""
        result: dict[str, Any] = {
            "line": self.line,
            "stop": self.stop,
            "type": self.type,
            "direction": self.direction,
            "direction_name": self.direction_name,
            "datetime": self.datetime.isoformat(),
        }
        if self.direction_type != DirectionType.UNKNOWN:
            result["direction_type"] = str(self.direction_type)
        return result


class DepartureLineConsumer:
    """Groups the departures of a file by stop."""

    def __init__(self) -> None:
        self.data: dict[str, list[Departure]] = {}

    def consume(self, line: list[str], location: tzinfo) -> None:
        departure = Departure.from_record(line, location)
        self.data.setdefault(departure.stop, []).append(departure)

    def terminate(self) -> None:
        for departures in self.data.values():
            departures.sort(key=lambda d: d.datetime)


def keep_direction(departure_direction: DirectionType, wanted_direction: DirectionType) -> bool:
    """Whether a departure going ``departure_direction`` matches the wanted direction."""
    return (
        wanted_direction == departure_direction
        or departure_direction == DirectionType.UNKNOWN
        or wanted_direction == DirectionType.BOTH
    )


def filter_departures_by_direction_type(
    departures: Iterable[Departure], direction_type: DirectionType
) -> list[Departure]:
    """Keep the departures matching ``direction_type``."""
    return [d for d in departures if keep_direction(d.direction_type, direction_type)]


class DeparturesContext:
    """Thread-safe store of the latest departures."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._departures: dict[str, list[Departure]] | None = None
        self._last_update = ZERO_TIME

    @property
    def last_departure_update(self) -> datetime:
        with self._lock:
            return self._last_update

    def update_departures(self, departures: Mapping[str, list[Departure]] | None) -> None:
        with self._lock:
            self._departures = dict(departures or {})
            self._last_update = datetime.now().astimezone()

    def get_departures_by_stops(self, stop_ids: Iterable[str]) -> list[Departure]:
        return self.get_departures_by_stops_and_direction_type(stop_ids, DirectionType.BOTH)

    def get_departures_by_stops_and_direction_type(
        self, stop_ids: Iterable[str], direction_type: DirectionType
    ) -> list[Departure]:
        """Departures of the given stops in time order; raise NoDataError before any load."""
        with self._lock:
            if self._departures is None:
                raise NoDataError("no departures")
            collected = [d for stop_id in stop_ids for d in self._departures.get(stop_id, ())]
        result = filter_departures_by_direction_type(collected, direction_type)
        result.sort(key=lambda d: d.datetime)
        return result


def _uri_text(uri: Uri) -> str:
    return uri.geturl() if isinstance(uri, SplitResult) else uri


def _seconds(value: float | int | timedelta) -> float:
    return value.total_seconds() if isinstance(value, timedelta) else float(value)


def refresh_departures(context: DeparturesContext, uri: Uri, connection_timeout: float | timedelta) -> None:
    """Load the departures file at ``uri`` into ``context``."""
    begin = time.perf_counter()
    try:
        file: IO[Any] = get_file(uri, connection_timeout)
        consumer = DepartureLineConsumer()
        load_data(file, consumer)
    except Exception:
        DEPARTURE_LOADING_ERRORS.inc()
        raise
    context.update_departures(consumer.data)
    DEPARTURE_LOADING_DURATION.observe(time.perf_counter() - begin)


def refresh_departures_loop(
    context: DeparturesContext,
    uri: Uri,
    refresh: float | timedelta,
    connection_timeout: float | timedelta,
    stop_event: threading.Event | None = None,
) -> None:
    """Reload departures every ``refresh`` until ``stop_event`` is set."""
    interval = _seconds(refresh)
    if not _uri_text(uri) or interval <= 0:
        logger.debug("Departures data refreshing is disabled")
        return
    if stop_event is None:
        stop_event = threading.Event()
    while True:
        try:
            refresh_departures(context, uri, connection_timeout)
        except Exception as exc:
            logger.error("Error while reloading departures data: %s", exc)
        else:
            logger.debug("Departures data updated")
        if stop_event.wait(interval):
            return


def add_departures_entry_point(app: Flask | None, context: DeparturesContext) -> Flask:
    """Register ``GET /departures`` on ``app``."""
    if app is None:
        app = Flask(__name__)

    def departures_handler():
        if "stop_id" not in request.args:
            return jsonify({"message": "stopID is required"}), 400
        stop_ids = request.args.getlist("stop_id")
        try:
            direction_type = parse_direction_type_from_navitia(request.args.get("direction_type", ""))
        except ValueError as exc:
            return jsonify({"message": str(exc)}), 400
        try:
            departures = context.get_departures_by_stops_and_direction_type(stop_ids, direction_type)
        except NoDataError:
            return jsonify({"message": "No data loaded"}), 503
        return jsonify({"departures": [d.to_dict() for d in departures]}), 200

    app.add_url_rule("/departures", endpoint="departures", view_func=departures_handler, methods=["GET"])
    return app