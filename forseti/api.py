"""HTTP service wiring: the shared data manager, ``/status`` and ``/metrics``."""

from __future__ import annotations

import logging
import threading
import time
from bisect import bisect_left
from dataclasses import dataclass, field
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Mapping, Protocol, runtime_checkable

from flask import Flask, Response, g, jsonify, request

from forseti.departures import DeparturesContext
from forseti.equipments import EquipmentsContext
from forseti.freefloatings import FreeFloatingsContext
from forseti.metrics import (
    DEPARTURE_LOADING_DURATION,
    DEPARTURE_LOADING_ERRORS,
    EQUIPMENTS_LOADING_DURATION,
    EQUIPMENTS_LOADING_ERRORS,
    FREE_FLOATINGS_LOADING_DURATION,
    FREE_FLOATINGS_LOADING_ERRORS,
    PARKINGS_LOADING_DURATION,
    PARKINGS_LOADING_ERRORS,
    Registry,
    exponential_buckets,
)
from forseti.parkings import ParkingsContext

logger = logging.getLogger(__name__)

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_TRUE_VALUES = frozenset({"1", "t", "T", "TRUE", "true", "True"})


def _package_version() -> str:
    try:
        return version("forseti")
    except PackageNotFoundError:
        return ""


FORSETI_VERSION = _package_version()


@runtime_checkable
class RefreshingSource(Protocol):
    """A data source whose periodic refresh can be switched on and off."""

    refresh_active: bool

    @property
    def refresh_time_text(self) -> str:
        """The refresh period as text."""

    @property
    def last_update(self) -> datetime:
        """When data was last loaded."""


@dataclass
class DataManager:
    """Holds the data store of every enabled service."""

    free_floatings_context: FreeFloatingsContext | None = None
    vehicle_occupancies_context: RefreshingSource | None = None
    vehicle_occupancies_oditi_context: RefreshingSource | None = None
    equipments_context: EquipmentsContext | None = None
    departures_context: DeparturesContext | None = None
    parkings_context: ParkingsContext | None = None
    vehicle_positions_context: RefreshingSource | None = None


@dataclass
class LoadingStatus:
    """Refresh state of a source that can be switched on and off."""

    refresh_active: bool = False
    refresh_time: str = ""
    last_update: datetime = ZERO_TIME

    def to_dict(self) -> dict[str, Any]:
        return {
            "refresh_active": self.refresh_active,
            "refresh_data": self.refresh_time,
            "last_update": self.last_update.isoformat(),
        }


@dataclass
class StatusResponse:
    """Body of the ``/status`` endpoint."""

    status: str = ""
    version: str = ""
    last_departure_update: datetime = ZERO_TIME
    last_parking_update: datetime = ZERO_TIME
    last_equipment_update: datetime = ZERO_TIME
    free_floatings: LoadingStatus = field(default_factory=LoadingStatus)
    vehicle_occupancies: LoadingStatus = field(default_factory=LoadingStatus)
    vehicle_positions: LoadingStatus = field(default_factory=LoadingStatus)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form; an empty status or version is left out."""
        result: dict[str, Any] = {}
        if self.status:
            result["status"] = self.status
        if self.version:
            result["version"] = self.version
        result.update(
            {
                "last_departure_update": self.last_departure_update.isoformat(),
                "last_parking_update": self.last_parking_update.isoformat(),
                "last_equipment_update": self.last_equipment_update.isoformat(),
                "free_floatings": self.free_floatings.to_dict(),
                "vehicle_occupancies": self.vehicle_occupancies.to_dict(),
                "vehicle_positions": self.vehicle_positions.to_dict(),
            }
        )
        return result


def _first(query: Mapping[str, Any], key: str) -> str:
    getlist = getattr(query, "getlist", None)
    if getlist is not None:
        values = getlist(key)
        return values[0] if values else ""
    value = query.get(key, "")
    if isinstance(value, (list, tuple)):
        return value[0] if value else ""
    return value or ""


def _switch(query: Mapping[str, Any], key: str) -> bool | None:
    """The requested activation, or None when the query does not ask for one."""
    value = _first(query, key)
    if not value:
        return None
    return value in _TRUE_VALUES


def _source_status(source: RefreshingSource | None, query: Mapping[str, Any], key: str) -> LoadingStatus:
    if source is None:
        return LoadingStatus()
    wanted = _switch(query, key)
    if wanted is not None:
        source.refresh_active = wanted
    return LoadingStatus(source.refresh_active, source.refresh_time_text, source.last_update)


def build_status(manager: DataManager, query: Mapping[str, Any]) -> StatusResponse:
    """Apply the activation switches found in ``query`` and report the state of every source."""
    free_floatings = LoadingStatus()
    ff_context = manager.free_floatings_context
    if ff_context is not None:
        wanted = _switch(query, "free_floatings")
        if wanted is not None:
            ff_context.refresh_active = wanted
        free_floatings = LoadingStatus(
            ff_context.refresh_active, ff_context.refresh_time_text, ff_context.last_free_floating_update
        )

    occupancies = _source_status(manager.vehicle_occupancies_context, query, "vehicle_occupancies")
    positions = _source_status(manager.vehicle_positions_context, query, "vehicle_positions")

    equipments = manager.equipments_context
    departures = manager.departures_context
    parkings = manager.parkings_context
    return StatusResponse(
        status="ok",
        version=FORSETI_VERSION,
        last_departure_update=departures.last_departure_update if departures else ZERO_TIME,
        last_parking_update=parkings.last_parking_update if parkings else ZERO_TIME,
        last_equipment_update=equipments.last_equipment_update if equipments else ZERO_TIME,
        free_floatings=free_floatings,
        vehicle_occupancies=occupancies,
        vehicle_positions=positions,
    )


def add_status_entry_point(app: Flask | None, manager: DataManager) -> Flask:
    """Register ``GET /status`` on ``app``."""
    if app is None:
        app = Flask(__name__)

    def status_handler():
        return jsonify(build_status(manager, request.args).to_dict()), 200

    app.add_url_rule("/status", endpoint="status", view_func=status_handler, methods=["GET"])
    return app


class _HttpMetrics:
    """Request latency per handler and status code, and requests in flight."""

    _DURATIONS = "forseti_http_durations_seconds"
    _IN_FLIGHT = "forseti_http_in_flight"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets = list(exponential_buckets(0.001, 1.5, 15))
        self._in_flight = 0
        self._series: dict[tuple[str, str], tuple[list[int], list[float]]] = {}

    def enter(self) -> None:
        with self._lock:
            self._in_flight += 1

    def leave(self) -> None:
        with self._lock:
            self._in_flight -= 1

    def observe(self, handler: str, code: str, seconds: float) -> None:
        with self._lock:
            counts, totals = self._series.setdefault(
                (handler, code), ([0] * len(self._buckets), [0.0, 0.0])
            )
            position = bisect_left(self._buckets, seconds)
            for index in range(position, len(self._buckets)):
                counts[index] += 1
            totals[0] += seconds
            totals[1] += 1

    def render(self) -> str:
        with self._lock:
            lines = [
                f"# HELP {self._DURATIONS} http request latency distributions.",
                f"# TYPE {self._DURATIONS} histogram",
            ]
            for (handler, code), (counts, totals) in sorted(self._series.items()):
                labels = f'handler="{handler}",code="{code}"'
                for bound, count in zip(self._buckets, counts):
                    lines.append(f'{self._DURATIONS}_bucket{{{labels},le="{bound:g}"}} {count}')
                lines.append(f'{self._DURATIONS}_bucket{{{labels},le="+Inf"}} {int(totals[1])}')
                lines.append(f"{self._DURATIONS}_sum{{{labels}}} {totals[0]!r}")
                lines.append(f"{self._DURATIONS}_count{{{labels}}} {int(totals[1])}")
            lines += [
                f"# HELP {self._IN_FLIGHT} current number of http request being served",
                f"# TYPE {self._IN_FLIGHT} gauge",
                f"{self._IN_FLIGHT} {self._in_flight}",
            ]
        return "\n".join(lines) + "\n"


_HTTP_METRICS = _HttpMetrics()
_REGISTRY = Registry()
for _metric in (
    DEPARTURE_LOADING_DURATION,
    DEPARTURE_LOADING_ERRORS,
    PARKINGS_LOADING_DURATION,
    PARKINGS_LOADING_ERRORS,
    EQUIPMENTS_LOADING_DURATION,
    EQUIPMENTS_LOADING_ERRORS,
    FREE_FLOATINGS_LOADING_DURATION,
    FREE_FLOATINGS_LOADING_ERRORS,
):
    _REGISTRY.register(_metric)


def _instrument(app: Flask) -> None:
    @app.before_request
    def _start_timer():
        g.forseti_request_begin = time.perf_counter()
        _HTTP_METRICS.enter()

    @app.after_request
    def _record(response):
        begin = g.pop("forseti_request_begin", None)
        if begin is not None:
            elapsed = time.perf_counter() - begin
            _HTTP_METRICS.leave()
            _HTTP_METRICS.observe(request.endpoint or "", str(response.status_code), elapsed)
            logger.info(
                "%s %s %d %.6fs", request.method, request.full_path.rstrip("?"), response.status_code, elapsed
            )
        return response


def setup_router(manager: DataManager, app: Flask | None = None) -> Flask:
    """Build or complete the application: request metrics, ``/metrics`` and ``/status``."""
    if app is None:
        app = Flask(__name__)
    _instrument(app)

    def metrics_handler():
        text = str(_REGISTRY.render() or "")
        if text and not text.endswith("\n"):
            text += "\n"
        return Response(text + _HTTP_METRICS.render(), mimetype="text/plain; version=0.0.4")

    app.add_url_rule("/metrics", endpoint="metrics", view_func=metrics_handler, methods=["GET"])
    add_status_entry_point(app, manager)
    return app