"""Raw documents read from external sources: equipment XML, vehicle and prediction JSON."""

from __future__ import annotations

import json
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Protocol, runtime_checkable

_DECLARATION = re.compile(rb"""^\s*<\?xml[^>]*?encoding\s*=\s*["']([^"']+)["']""")
_RFC3339 = re.compile(r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(\.\d+)?(Z|[+-]\d{2}:\d{2})")


@dataclass
class Info:
    date: str = ""
    hour: str = ""


@dataclass
class EquipmentSource:
    type: str = ""
    id: str = ""
    name: str = ""
    cause: str = ""
    effect: str = ""
    start: str = ""
    end: str = ""
    hour: str = ""

    @classmethod
    def _from_element(cls, element: ET.Element) -> EquipmentSource:
        get = element.get
        return cls(
            type=get("type", ""),
            id=get("code_client", ""),
            name=get("nom_client", ""),
            cause=get("cause", ""),
            effect=get("consequence", ""),
            start=get("date_debut_indisponibilite", ""),
            end=get("date_remise_service", ""),
            hour=get("heure_remise_service", ""),
        )


@dataclass
class Station:
    equipments: list[EquipmentSource] = field(default_factory=list)


@dataclass
class Line:
    code: str = ""
    label: str = ""
    stations: list[Station] = field(default_factory=list)


@dataclass
class Root:
    """An equipment availability document."""

    info: Info = field(default_factory=Info)
    lines: list[Line] = field(default_factory=list)

    @classmethod
    def from_xml(cls, content: bytes) -> Root:
        """Parse the XML bytes; only UTF-8 and ISO-8859-1 are accepted."""
        content = bytes(content)
        declared = _DECLARATION.match(content)
        if declared:
            charset = declared.group(1).decode("ascii", "replace")
            if charset.lower() != "utf-8" and charset != "ISO-8859-1":
                raise ValueError("unknown Charset")
        try:
            element = ET.fromstring(content)
        except ET.ParseError as exc:
            raise ValueError(str(exc)) from exc
        if element.tag != "root":
            raise ValueError(f"expected element type <root> but have <{element.tag}>")

        info = Info()
        info_element = element.find("infos_generales")
        if info_element is not None:
            info = Info(date=info_element.get("date", ""), hour=info_element.get("heure", ""))

        lines: list[Line] = []
        data_element = element.find("donnees")
        if data_element is not None:
            for line in data_element.findall("ligne"):
                stations = [
                    Station([EquipmentSource._from_element(e) for e in station.findall("equipement")])
                    for station in line.findall("station")
                ]
                lines.append(Line(line.get("code", ""), line.get("libelle", ""), stations))
        return cls(info=info, lines=lines)


def _field(mapping: dict[str, Any], key: str, kind: type, default: Any) -> Any:
    value = mapping.get(key)
    if value is None:
        return default
    if kind is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, bool) and kind is not bool:
        raise TypeError(f"field {key!r}: expected {kind.__name__}")
    if not isinstance(value, kind):
        raise TypeError(f"field {key!r}: expected {kind.__name__}")
    return value


@dataclass
class Vehicle:
    """A shared vehicle as listed by the free-floating provider."""

    public_id: str = ""
    provider_name: str = ""
    id: str = ""
    type: str = ""
    latitude: float = 0.0
    longitude: float = 0.0
    propulsion: str = ""
    battery: int = 0
    deeplink: str = ""
    attributes: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Vehicle:
        provider = _field(payload, "provider", dict, {})
        attributes = _field(payload, "attributes", list, [])
        if not all(isinstance(item, str) for item in attributes):
            raise TypeError("field 'attributes': expected a list of strings")
        return cls(
            public_id=_field(payload, "publicId", str, ""),
            provider_name=_field(provider, "name", str, ""),
            id=_field(payload, "id", str, ""),
            type=_field(payload, "type", str, ""),
            latitude=_field(payload, "latitude", float, 0.0),
            longitude=_field(payload, "longitude", float, 0.0),
            propulsion=_field(payload, "propulsion", str, ""),
            battery=_field(payload, "battery", int, 0),
            deeplink=_field(payload, "deeplink", str, ""),
            attributes=list(attributes),
        )


def parse_vehicles(payload: dict[str, Any] | str | bytes) -> list[Vehicle]:
    """Extract the vehicles of a ``{"data": {"area": {"vehicles": [...]}}}`` document."""
    if isinstance(payload, (str, bytes)):
        payload = json.loads(payload)
    area = _field(_field(payload, "data", dict, {}), "area", dict, {})
    return [Vehicle.from_dict(item) for item in _field(area, "vehicles", list, [])]


def _parse_rfc3339(text: str) -> datetime:
    match = _RFC3339.fullmatch(text)
    if not match:
        raise ValueError(f"invalid RFC 3339 time: {text!r}")
    base, fraction, zone = match.groups()
    micro = (fraction or ".0")[1:7].ljust(6, "0")
    zone = "+00:00" if zone == "Z" else zone
    return datetime.fromisoformat(f"{base}.{micro}{zone}")


@dataclass
class PredictionNode:
    """One occupancy prediction for a stop of a course."""

    line: str = ""
    sens: int = 0
    date: str = ""
    course: str = ""
    order: int = 0
    stop_name: str = ""
    charge: float = 0.0
    created_at: datetime | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PredictionNode:
        created = _field(payload, "created_at", str, None)
        return cls(
            line=_field(payload, "ligne", str, ""),
            sens=_field(payload, "sens", int, 0),
            date=_field(payload, "date", str, ""),
            course=_field(payload, "course", str, ""),
            order=_field(payload, "ordre", int, 0),
            stop_name=_field(payload, "arret", str, ""),
            charge=_field(payload, "charge", float, 0.0),
            created_at=_parse_rfc3339(created) if created is not None else None,
        )


@runtime_checkable
class LineConsumer(Protocol):
    """Receives the records of a delimited file."""

    def consume(self, line: list[str], location: tzinfo) -> None:
        """Handle one record; raise to abort the load."""

    def terminate(self) -> None:
        """Called once after the last record."""