"""Shared free-floating vehicles (bikes, scooters, cars) around a point."""

from __future__ import annotations

import logging
import math
import struct
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Any, Iterable, Mapping, Union
from urllib.parse import SplitResult

import requests
from flask import Flask, jsonify, request

from forseti.data import Vehicle, parse_vehicles
from forseti.metrics import FREE_FLOATINGS_LOADING_DURATION, FREE_FLOATINGS_LOADING_ERRORS
from forseti.utils import (
    FORM_CONTENT_TYPE,
    NoDataError,
    Paginate,
    check_response_status,
    coord_distance,
    paginate_end_point,
    string_to_int,
)

logger = logging.getLogger(__name__)

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
STARTUP_DELAY = 10.0
AREA_ID = 6
VEHICLES_QUERY = (
    "query($id: Int!) {area(id: $id) {vehicles{publicId, provider{name}, id, type, attributes ,"
    "latitude: lat, longitude: lng, propulsion, battery, deeplink } } }"
)

Uri = Union[str, SplitResult]


class FreeFloatingType(IntEnum):
    """Kinds of shared vehicle a client may filter on."""

    BIKE = 0
    SCOOTER = 1
    MOTORSCOOTER = 2
    STATION = 3
    CAR = 4
    OTHER = 5
    UNKNOWN = 6

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Coord:
    lat: float = 0.0
    lon: float = 0.0

    def to_dict(self) -> dict[str, float]:
        result: dict[str, float] = {}
        if self.lat:
            result["lat"] = self.lat
        if self.lon:
            result["lon"] = self.lon
        return result


@dataclass
class FreeFloating:
    """A shared vehicle as shown in a response."""

    public_id: str = ""
    provider_name: str = ""
    id: str = ""
    type: str = ""
    coord: Coord = field(default_factory=Coord)
    propulsion: str = ""
    battery: int = 0
    deeplink: str = ""
    attributes: list[str] = field(default_factory=list)
    distance: float = 0.0

    @classmethod
    def from_vehicle(cls, vehicle: Vehicle) -> FreeFloating:
        return cls(
            public_id=vehicle.public_id,
            provider_name=vehicle.provider_name,
            id=vehicle.id,
            type=vehicle.type,
            coord=Coord(lat=vehicle.latitude, lon=vehicle.longitude),
            propulsion=vehicle.propulsion,
            battery=vehicle.battery,
            deeplink=vehicle.deeplink,
            attributes=list(vehicle.attributes),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form; empty fields other than the coordinate are left out."""
        result: dict[str, Any] = {}
        for key, value in (
            ("public_id", self.public_id),
            ("provider_name", self.provider_name),
            ("id", self.id),
            ("type", self.type),
        ):
            if value:
                result[key] = value
        result["coord"] = self.coord.to_dict()
        for key, value in (
            ("propulsion", self.propulsion),
            ("battery", self.battery),
            ("deeplink", self.deeplink),
            ("attributes", list(self.attributes)),
            ("distance", self.distance),
        ):
            if value:
                result[key] = value
        return result


@dataclass
class FreeFloatingRequestParameter:
    """Filters and paging asked for by a client."""

    distance: int = 500
    coord: Coord = field(default_factory=Coord)
    count: int = 25
    types: list[FreeFloatingType] = field(default_factory=list)
    start_page: int = 0


_TYPES_BY_PARAM = {
    "bike": FreeFloatingType.BIKE,
    "scooter": FreeFloatingType.SCOOTER,
    "motorscooter": FreeFloatingType.MOTORSCOOTER,
    "station": FreeFloatingType.STATION,
    "car": FreeFloatingType.CAR,
    "other": FreeFloatingType.OTHER,
}


def parse_free_floating_type(value: str) -> FreeFloatingType:
    """Parse a vehicle type given by a client, ignoring case."""
    return _TYPES_BY_PARAM.get(value.lower(), FreeFloatingType.UNKNOWN)


def update_parameter_types(param: FreeFloatingRequestParameter, types: Iterable[str]) -> None:
    """Add the recognised types among ``types`` to ``param``."""
    for value in types:
        kind = parse_free_floating_type(value)
        if kind != FreeFloatingType.UNKNOWN:
            param.types.append(kind)


def keep_it(free_floating: FreeFloating, types: Iterable[FreeFloatingType]) -> bool:
    """Whether the vehicle's type is among ``types``; an empty filter keeps everything."""
    wanted = list(types)
    if not wanted:
        return True
    kind = free_floating.type.casefold()
    return any(kind == str(value).casefold() for value in wanted)


def _getlist(args: Mapping[str, Any], key: str) -> list[str]:
    getlist = getattr(args, "getlist", None)
    if getlist is not None:
        return list(getlist(key))
    value = args.get(key)
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def _first(args: Mapping[str, Any], key: str) -> str | None:
    values = _getlist(args, key)
    return values[0] if values else None


def _parse_float32(text: str) -> float:
    if not text or text != text.strip() or "_" in text:
        raise ValueError(f"invalid float: {text!r}")
    number = float(text)
    try:
        return struct.unpack("f", struct.pack("f", number))[0]
    except OverflowError:
        raise ValueError(f"value out of range: {text!r}") from None


def parse_request_parameter(args: Mapping[str, Any]) -> FreeFloatingRequestParameter:
    """Read the query arguments of a free-floating request; raise ValueError on bad input."""
    param = FreeFloatingRequestParameter()
    count = _first(args, "count")
    param.count = string_to_int("25" if count is None else count, 25)
    distance = _first(args, "distance")
    param.distance = string_to_int("500" if distance is None else distance, 500)
    start_page = _first(args, "start_page")
    param.start_page = string_to_int("0" if start_page is None else start_page, 0)

    update_parameter_types(param, _getlist(args, "type[]"))

    coord_text = _first(args, "coord") or ""
    if not coord_text:
        raise ValueError("Bad request: coord is mandatory")
    parts = coord_text.split(";")
    if len(parts) == 2:
        try:
            longitude = _parse_float32(parts[0])
        except ValueError:
            raise ValueError("Bad request: error on coord longitude value") from None
        try:
            latitude = _parse_float32(parts[1])
        except ValueError:
            raise ValueError("Bad request: error on coord latitude value") from None
        param.coord = Coord(lat=latitude, lon=longitude)
    return param


def _round_half_away(value: float) -> float:
    floor = math.floor(value)
    return float(floor + 1) if value - floor >= 0.5 else float(floor)


def _format_duration(value: timedelta) -> str:
    micro = value // timedelta(microseconds=1)
    if micro == 0:
        return "0s"
    sign = "-" if micro < 0 else ""
    micro = abs(micro)
    if micro < 1000:
        return f"{sign}{micro}µs"
    if micro < 1_000_000:
        whole, frac = divmod(micro, 1000)
        text = f"{whole}.{frac:03d}".rstrip("0").rstrip(".")
        return f"{sign}{text}ms"
    hours, rest = divmod(micro, 3_600_000_000)
    minutes, rest = divmod(rest, 60_000_000)
    seconds, frac = divmod(rest, 1_000_000)
    sec_text = f"{seconds}.{frac:06d}".rstrip("0") if frac else str(seconds)
    if hours:
        return f"{sign}{hours}h{minutes}m{sec_text}s"
    if minutes:
        return f"{sign}{minutes}m{sec_text}s"
    return f"{sign}{sec_text}s"


class FreeFloatingsContext:
    """Thread-safe store of the latest free-floating vehicles."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._free_floatings: list[FreeFloating] | None = None
        self._last_update = ZERO_TIME
        self._refresh_active = False
        self._refresh_time = timedelta(0)

    @property
    def refresh_active(self) -> bool:
        """Whether the periodic refresh loads new data."""
        with self._lock:
            return self._refresh_active

    @refresh_active.setter
    def refresh_active(self, active: bool) -> None:
        with self._lock:
            self._refresh_active = bool(active)

    @property
    def refresh_time(self) -> timedelta:
        with self._lock:
            return self._refresh_time

    @refresh_time.setter
    def refresh_time(self, value: timedelta | float) -> None:
        with self._lock:
            self._refresh_time = value if isinstance(value, timedelta) else timedelta(seconds=value)

    @property
    def refresh_time_text(self) -> str:
        """The refresh period written as e.g. ``30s`` or ``5m0s``."""
        return _format_duration(self.refresh_time)

    @property
    def last_free_floating_update(self) -> datetime:
        with self._lock:
            return self._last_update

    def update_free_floatings(self, free_floatings: Iterable[FreeFloating]) -> None:
        with self._lock:
            self._free_floatings = list(free_floatings)
            self._last_update = datetime.now().astimezone()

    def get_free_floatings(self, param: FreeFloatingRequestParameter) -> tuple[list[FreeFloating], Paginate]:
        """Vehicles near ``param.coord`` by distance, one page of them; raise NoDataError before any load."""
        with self._lock:
            if self._free_floatings is None:
                raise NoDataError("No free-floatings in the data")
            stored = list(self._free_floatings)

        kept: list[FreeFloating] = []
        for free_floating in stored:
            if not keep_it(free_floating, param.types):
                continue
            distance = coord_distance(
                param.coord.lat, param.coord.lon, free_floating.coord.lat, free_floating.coord.lon
            )
            if int(distance) > param.distance:
                continue
            kept.append(replace(free_floating, distance=_round_half_away(distance)))
        kept.sort(key=lambda f: f.distance)

        paginate, start, end = paginate_end_point(len(kept), param.count, param.start_page)
        page = kept[start:end] if start >= 0 else []
        return page, paginate


def load_free_floatings_data(vehicles: Iterable[Vehicle]) -> list[FreeFloating]:
    """Turn provider vehicles into free-floating records."""
    return [FreeFloating.from_vehicle(vehicle) for vehicle in vehicles]


def call_http_client(site_host: str, token: str) -> requests.Response:
    """Ask the provider for the vehicles of the configured area."""
    form = [("query", VEHICLES_QUERY), ("variables", f'{{"id": {AREA_ID}}}')]
    return requests.post(
        f"{site_host}/v1?access_token={token}",
        data=form,
        headers={"content-type": FORM_CONTENT_TYPE},
    )


def _uri_text(uri: Uri) -> str:
    return uri.geturl() if isinstance(uri, SplitResult) else uri


def _seconds(value: float | int | timedelta) -> float:
    return value.total_seconds() if isinstance(value, timedelta) else float(value)


def refresh_free_floatings(
    context: FreeFloatingsContext, uri: Uri, token: str, connection_timeout: float | timedelta
) -> None:
    """Load vehicles from the provider into ``context``; does nothing while refresh is off."""
    if not context.refresh_active:
        return
    begin = time.perf_counter()
    try:
        response = call_http_client(_uri_text(uri), token)
        check_response_status(response)
        free_floatings = load_free_floatings_data(parse_vehicles(response.json()))
    except Exception:
        FREE_FLOATINGS_LOADING_ERRORS.inc()
        raise
    context.update_free_floatings(free_floatings)
    FREE_FLOATINGS_LOADING_DURATION.observe(time.perf_counter() - begin)


def refresh_free_floating_loop(
    context: FreeFloatingsContext,
    uri: Uri,
    token: str,
    refresh: float | timedelta,
    connection_timeout: float | timedelta,
    stop_event: threading.Event | None = None,
) -> None:
    """Reload vehicles every ``refresh`` until ``stop_event`` is set, after a short start delay."""
    interval = _seconds(refresh)
    if not _uri_text(uri) or interval <= 0:
        logger.debug("FreeFloating data refreshing is disabled")
        return
    context.refresh_time = timedelta(seconds=interval)
    if stop_event is None:
        stop_event = threading.Event()
    if stop_event.wait(STARTUP_DELAY):
        return
    while True:
        try:
            refresh_free_floatings(context, uri, token, connection_timeout)
        except Exception as exc:
            logger.error("Error while reloading freefloating data: %s", exc)
        else:
            logger.debug("Free_floating data updated")
        if stop_event.wait(interval):
            return


def _response_body(
    free_floatings: list[FreeFloating], paginate: Paginate, error: str = ""
) -> dict[str, Any]:
    body: dict[str, Any] = {}
    if free_floatings:
        body["free_floatings"] = [f.to_dict() for f in free_floatings]
    body["pagination"] = paginate.to_dict()
    if error:
        body["error"] = error
    return body


def add_free_floatings_entry_point(app: Flask | None, context: FreeFloatingsContext) -> Flask:
    """Register ``GET /free_floatings`` on ``app``."""
    if app is None:
        app = Flask(__name__)

    def free_floatings_handler():
        try:
            param = parse_request_parameter(request.args)
        except ValueError as exc:
            return jsonify(_response_body([], Paginate(), str(exc))), 503
        try:
            free_floatings, paginate = context.get_free_floatings(param)
        except NoDataError:
            return jsonify(_response_body([], Paginate(), "No data loaded")), 503
        return jsonify(_response_body(free_floatings, paginate)), 200

    app.add_url_rule(
        "/free_floatings", endpoint="free_floatings", view_func=free_floatings_handler, methods=["GET"]
    )
    return app