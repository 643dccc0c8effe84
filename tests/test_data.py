import json
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from forseti.data import LineConsumer, PredictionNode, Root, Vehicle, parse_vehicles
from forseti.parkings import ParkingLineConsumer

XML = (
    '<?xml version="1.0" encoding="ISO-8859-1"?>'
    '<root><infos_generales date="2018-09-15" heure="12:01:31"/>'
    '<donnees><ligne code="D" libelle="Ligne D"><station>'
    '<equipement type="ASCENSEUR" code_client="821" nom_client="Gare" '
    'cause="Problème technique" consequence="Accès impossible" '
    'date_debut_indisponibilite="2018-09-14" date_remise_service="2018-09-14" '
    'heure_remise_service="13:00:00"/>'
    "</station></ligne></donnees></root>"
).encode("iso-8859-1")


def test_root_from_iso_8859_1_xml():
    root = Root.from_xml(XML)
    assert root.info.date == "2018-09-15"
    assert root.info.hour == "12:01:31"
    assert len(root.lines) == 1
    equipment = root.lines[0].stations[0].equipments[0]
    assert equipment.id == "821"
    assert equipment.type == "ASCENSEUR"
    assert equipment.cause == "Problème technique"
    assert equipment.hour == "13:00:00"


def test_root_rejects_unknown_charset():
    content = b'<?xml version="1.0" encoding="windows-1252"?><root/>'
    with pytest.raises(ValueError, match="unknown Charset"):
        Root.from_xml(content)


def test_root_rejects_other_document():
    with pytest.raises(ValueError, match="<root>"):
        Root.from_xml(b"<other/>")


def test_root_rejects_malformed_xml():
    with pytest.raises(ValueError):
        Root.from_xml(b"<root>")


VEHICLE = {
    "publicId": "PUBLIC-1",
    "provider": {"name": "Pony"},
    "id": "vehicle-1",
    "type": "BIKE",
    "latitude": 48.847232,
    "longitude": 2.377601,
    "propulsion": "ASSIST",
    "battery": 55,
    "deeplink": "http://test1",
    "attributes": ["ELECTRIC"],
}


def test_vehicle_from_dict():
    vehicle = Vehicle.from_dict(VEHICLE)
    assert vehicle.public_id == "PUBLIC-1"
    assert vehicle.provider_name == "Pony"
    assert vehicle.battery == 55
    assert vehicle.latitude == 48.847232
    assert vehicle.attributes == ["ELECTRIC"]


def test_vehicle_missing_fields_default():
    vehicle = Vehicle.from_dict({"id": "vehicle-1"})
    assert vehicle == Vehicle(id="vehicle-1")


def test_vehicle_wrong_type():
    with pytest.raises(TypeError):
        Vehicle.from_dict({"battery": "full"})


def test_parse_vehicles_from_json_text():
    text = json.dumps({"data": {"area": {"vehicles": [VEHICLE, VEHICLE]}}})
    vehicles = parse_vehicles(text)
    assert [v.id for v in vehicles] == ["vehicle-1", "vehicle-1"]
    assert parse_vehicles({}) == []


def test_prediction_node_from_dict():
    node = PredictionNode.from_dict(
        {
            "ligne": "40",
            "sens": 1,
            "date": "2021-01-18",
            "course": "2774327",
            "ordre": 1,
            "arret": "Pont de Sevres",
            "charge": 55.0,
            "created_at": "2021-01-18T06:00:00Z",
        }
    )
    assert node.line == "40"
    assert node.stop_name == "Pont de Sevres"
    assert node.created_at == datetime(2021, 1, 18, 6, 0, tzinfo=timezone.utc)


def test_prediction_node_bad_timestamp():
    with pytest.raises(ValueError):
        PredictionNode.from_dict({"created_at": "yesterday"})


def test_line_consumer_protocol():
    consumer = ParkingLineConsumer()
    consumer.consume(
        ["DECC", "Décines Centre", "2018-09-17 19:29:00", "2018-09-17 19:30:02", "82", "105", "3", "4"],
        ZoneInfo("Europe/Paris"),
    )
    consumer.terminate()
    assert isinstance(consumer, LineConsumer)
    assert list(consumer.parkings) == ["DECC"]
    assert not isinstance(object(), LineConsumer)