"""Availability of station equipments such as elevators and escalators."""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from datetime import time as clock_time
from typing import IO, Any, Iterable, Union
from urllib.parse import SplitResult
from zoneinfo import ZoneInfo

from flask import Flask, jsonify

from forseti.data import EquipmentSource, Info, Root
from forseti.metrics import EQUIPMENTS_LOADING_DURATION, EQUIPMENTS_LOADING_ERRORS
from forseti.utils import NoDataError, get_file

logger = logging.getLogger(__name__)

LOCATION = "Europe/Paris"
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
_CLOCK_RE = re.compile(r"\d{1,2}:\d{2}:\d{2}")

Uri = Union[str, SplitResult]


@dataclass
class Period:
    begin: datetime
    end: datetime

    def to_dict(self) -> dict[str, str]:
        return {"begin": self.begin.isoformat(), "end": self.end.isoformat()}


@dataclass
class CurrentAvailability:
    status: str
    cause: str
    effect: str
    periods: list[Period] = field(default_factory=list)
    updated_at: datetime = ZERO_TIME

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "cause": {"label": self.cause},
            "effect": {"label": self.effect},
            "periods": [p.to_dict() for p in self.periods],
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class EquipmentDetail:
    """An equipment and its current availability."""

    id: str
    name: str
    embedded_type: str
    current_availability: CurrentAvailability

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "embedded_type": self.embedded_type,
            "current_availaibity": self.current_availability.to_dict(),
        }


def embedded_type(value: str) -> str:
    """Translate the source's equipment type."""
    if value == "ASCENSEUR":
        return "elevator"
    if value == "ESCALIER":
        return "escalator"
    raise ValueError(f"Unsupported EmbeddedType {value}")


def equipment_status(start: datetime, end: datetime, now: datetime) -> str:
    """``unavailable`` while ``now`` lies within the outage period."""
    if now < start or now > end:
        return "available"
    return "unavailable"


def _parse_date(text: str) -> date:
    if not _DATE_RE.fullmatch(text):
        raise ValueError(f"cannot parse {text!r} as a date")
    return datetime.strptime(text, "%Y-%m-%d").date()


def _parse_clock(text: str) -> clock_time:
    if not _CLOCK_RE.fullmatch(text):
        raise ValueError(f"cannot parse {text!r} as a time of day")
    return datetime.strptime(text, "%H:%M:%S").time()


def calculate_date(info: Info, location: tzinfo) -> datetime:
    """Join the document's date and hour."""
    return datetime.combine(_parse_date(info.date), _parse_clock(info.hour), tzinfo=location)


def new_equipment_detail(source: EquipmentSource, updated_at: datetime, location: tzinfo) -> EquipmentDetail:
    """Build an EquipmentDetail from a raw equipment entry."""
    start = datetime.combine(_parse_date(source.start), clock_time(), tzinfo=location)
    end_day = _parse_date(source.end)
    hour = _parse_clock(source.hour)
    end = datetime.combine(end_day, hour, tzinfo=location)
    kind = embedded_type(source.type)
    now = datetime.now(location)
    return EquipmentDetail(
        id=source.id,
        name=source.name,
        embedded_type=kind,
        current_availability=CurrentAvailability(
            status=equipment_status(start, end, now),
            cause=source.cause,
            effect=source.effect,
            periods=[Period(begin=start, end=end)],
            updated_at=updated_at,
        ),
    )


def load_xml_equipments(file: IO[Any]) -> list[EquipmentDetail]:
    """Read an equipments XML document; equipments sharing an id are kept once."""
    location = ZoneInfo(LOCATION)
    content = file.read()
    if isinstance(content, str):
        content = content.encode("utf-8")
    root = Root.from_xml(content)
    updated_at = calculate_date(root.info, location)
    equipments: dict[str, EquipmentDetail] = {}
    for line in root.lines:
        for station in line.stations:
            for source in station.equipments:
                detail = new_equipment_detail(source, updated_at, location)
                equipments[detail.id] = detail
    return list(equipments.values())


class EquipmentsContext:
    """Thread-safe store of the latest equipments."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._equipments: list[EquipmentDetail] | None = None
        self._last_update = ZERO_TIME

    @property
    def last_equipment_update(self) -> datetime:
        with self._lock:
            return self._last_update

    def update_equipments(self, equipments: Iterable[EquipmentDetail]) -> None:
        with self._lock:
            self._equipments = list(equipments)
            self._last_update = datetime.now().astimezone()

    def get_equipments(self) -> list[EquipmentDetail]:
        """The loaded equipments; raise NoDataError before any load."""
        with self._lock:
            if self._equipments is None:
                raise NoDataError("No equipments in the data")
            return list(self._equipments)


def _uri_text(uri: Uri) -> str:
    return uri.geturl() if isinstance(uri, SplitResult) else uri


def _seconds(value: float | int | timedelta) -> float:
    return value.total_seconds() if isinstance(value, timedelta) else float(value)


def refresh_equipments(context: EquipmentsContext, uri: Uri, connection_timeout: float | timedelta) -> None:
    """Load the equipments document at ``uri`` into ``context``."""
    begin = time.perf_counter()
    try:
        equipments = load_xml_equipments(get_file(uri, connection_timeout))
    except Exception:
        EQUIPMENTS_LOADING_ERRORS.inc()
        raise
    context.update_equipments(equipments)
    EQUIPMENTS_LOADING_DURATION.observe(time.perf_counter() - begin)


def refresh_equipment_loop(
    context: EquipmentsContext,
    uri: Uri,
    refresh: float | timedelta,
    connection_timeout: float | timedelta,
    stop_event: threading.Event | None = None,
) -> None:
    """Reload equipments every ``refresh`` until ``stop_event`` is set."""
    interval = _seconds(refresh)
    if not _uri_text(uri) or interval <= 0:
        logger.debug("Equipment data refreshing is disabled")
        return
    if stop_event is None:
        stop_event = threading.Event()
    while True:
        try:
            refresh_equipments(context, uri, connection_timeout)
        except Exception as exc:
            logger.error("Error while reloading equipment data: %s", exc)
        else:
            logger.debug("Equipment data updated")
        if stop_event.wait(interval):
            return


def add_equipments_entry_point(app: Flask | None, context: EquipmentsContext) -> Flask:
    """Register ``GET /equipments`` on ``app``."""
    if app is None:
        app = Flask(__name__)

    def equipments_handler():
        try:
            equipments = context.get_equipments()
        except NoDataError:
            return jsonify({"errors": "No data loaded"}), 503
        body: dict[str, Any] = {}
        if equipments:
            body["equipments_details"] = [e.to_dict() for e in equipments]
        return jsonify(body), 200

    app.add_url_rule("/equipments", endpoint="equipments", view_func=equipments_handler, methods=["GET"])
    return app