import io
import threading
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
from flask import Flask

from forseti.data import EquipmentSource, Info
from forseti.equipments import (
    EquipmentsContext,
    add_equipments_entry_point,
    calculate_date,
    embedded_type,
    equipment_status,
    load_xml_equipments,
    new_equipment_detail,
    refresh_equipment_loop,
    refresh_equipments,
)
from forseti.metrics import EQUIPMENTS_LOADING_ERRORS
from forseti.utils import NoDataError, get_file_with_fs

PARIS = ZoneInfo("Europe/Paris")
TIMEOUT = timedelta(seconds=10)
NAME_821 = "direction Gare de Vaise, accès Gare Routière ou Parc Relais"
CAUSE = "Problème technique"
EFFECT_821 = "Accès impossible direction Gare de Vaise."


def _equipment(code, kind="ASCENSEUR", name=NAME_821, effect=EFFECT_821):
    return (
        f'<equipement type="{kind}" code_client="{code}" nom_client="{name}" cause="{CAUSE}" '
        f'consequence="{effect}" date_debut_indisponibilite="2018-09-14" '
        f'date_remise_service="2018-09-14" heure_remise_service="13:00:00"/>'
    )


def _document(equipment_kind="ASCENSEUR", encoding="ISO-8859-1"):
    lines = [
        f'<ligne code="A" libelle="Ligne A"><station>{_equipment("821", equipment_kind)}</station></ligne>',
        f'<ligne code="B" libelle="Ligne B"><station>{_equipment("822", "ESCALIER", "sortie nord")}</station></ligne>',
        f'<ligne code="C" libelle="Ligne C"><station>{_equipment("823", name="quai sud")}</station></ligne>',
        f'<ligne code="D" libelle="Ligne D"><station>{_equipment("821", equipment_kind)}</station></ligne>',
    ]
    lines += [f'<ligne code="L{i}" libelle="Ligne {i}"><station/></ligne>' for i in range(4)]
    return (
        f'<?xml version="1.0" encoding="{encoding}"?>\n<root>'
        '<infos_generales date="2018-09-15" heure="12:01:31"/>'
        f"<donnees>{''.join(lines)}</donnees></root>"
    ).encode("latin-1")


@pytest.fixture
def net_access(tmp_path):
    path = tmp_path / "NET_ACCESS.XML"
    path.write_bytes(_document())
    return path.as_uri()


def _source(code, kind="ASCENSEUR"):
    return EquipmentSource(
        id=code,
        name=f"{code} paris",
        type=kind,
        cause=CAUSE,
        effect="Accès",
        start="2018-09-17",
        end="2018-09-18",
        hour="23:30:00",
    )


def test_equipments_api(net_access):
    context = EquipmentsContext()
    client = add_equipments_entry_point(Flask("test"), context).test_client()

    response = client.get("/equipments")
    assert response.status_code == 503
    assert response.get_json() == {"errors": "No data loaded"}

    refresh_equipments(context, net_access, TIMEOUT)
    response = client.get("/equipments")
    assert response.status_code == 200
    body = response.get_json()
    assert "errors" not in body
    assert len(body["equipments_details"]) == 3
    ids = {e["id"] for e in body["equipments_details"]}
    assert ids == {"821", "822", "823"}


def test_equipments_api_empty_list_is_omitted():
    context = EquipmentsContext()
    context.update_equipments([])
    client = add_equipments_entry_point(None, context).test_client()
    response = client.get("/equipments")
    assert response.status_code == 200
    assert response.get_json() == {}


def test_load_equipments_data(net_access):
    eds = load_xml_equipments(get_file_with_fs(net_access))
    assert len(eds) == 3
    ed = next(e for e in eds if e.id == "821")
    assert ed.id == "821"
    assert ed.embedded_type == "elevator"
    assert ed.name == NAME_821
    assert ed.current_availability.cause == CAUSE
    assert ed.current_availability.status == "available"
    assert ed.current_availability.effect == EFFECT_821
    assert ed.current_availability.periods[0].begin == datetime(2018, 9, 14, 0, 0, 0, tzinfo=PARIS)
    assert ed.current_availability.periods[0].end == datetime(2018, 9, 14, 13, 0, 0, tzinfo=PARIS)
    assert ed.current_availability.updated_at == datetime(2018, 9, 15, 12, 1, 31, tzinfo=PARIS)
    escalator = next(e for e in eds if e.id == "822")
    assert escalator.embedded_type == "escalator"


def test_load_equipments_unknown_charset():
    with pytest.raises(ValueError, match="unknown Charset"):
        load_xml_equipments(io.BytesIO(_document(encoding="KOI8-R")))


def test_load_equipments_bad_type_fails_and_counts(tmp_path):
    path = tmp_path / "bad.xml"
    path.write_bytes(_document(equipment_kind="ASC"))
    before = EQUIPMENTS_LOADING_ERRORS.value
    context = EquipmentsContext()
    with pytest.raises(ValueError, match="Unsupported EmbeddedType ASC"):
        refresh_equipments(context, path.as_uri(), TIMEOUT)
    assert EQUIPMENTS_LOADING_ERRORS.value == before + 1
    with pytest.raises(NoDataError):
        context.get_equipments()


def test_data_manager_get_equipments():
    context = EquipmentsContext()
    updated_at = datetime.now(PARIS)
    equipments = [new_equipment_detail(_source(code), updated_at, PARIS) for code in ("toto", "tata", "titi")]
    context.update_equipments(equipments)
    details = context.get_equipments()
    assert [d.id for d in details] == ["toto", "tata", "titi"]


def test_equipments_with_bad_embedded_type():
    updated_at = datetime.now(PARIS)
    for code in ("toto", "tata"):
        with pytest.raises(ValueError):
            new_equipment_detail(_source(code, "ASC"), updated_at, PARIS)


def test_new_equipment_detail():
    updated_at = datetime.now(PARIS)
    source = EquipmentSource(
        id="821",
        name=NAME_821,
        type="ASCENSEUR",
        cause=CAUSE,
        effect=EFFECT_821,
        start="2018-09-14",
        end="2018-09-14",
        hour="13:00:00",
    )
    e = new_equipment_detail(source, updated_at, PARIS)
    assert e.id == "821"
    assert e.name == NAME_821
    assert e.embedded_type == "elevator"
    assert e.current_availability.cause == CAUSE
    assert e.current_availability.effect == EFFECT_821
    assert e.current_availability.periods[0].begin == datetime(2018, 9, 14, 0, 0, 0, tzinfo=PARIS)
    assert e.current_availability.periods[0].end == datetime(2018, 9, 14, 13, 0, 0, tzinfo=PARIS)
    assert e.current_availability.updated_at == updated_at


def test_to_dict():
    updated_at = datetime(2018, 9, 15, 12, 1, 31, tzinfo=PARIS)
    detail = new_equipment_detail(_source("toto"), updated_at, PARIS)
    assert detail.to_dict() == {
        "id": "toto",
        "name": "toto paris",
        "embedded_type": "elevator",
        "current_availaibity": {
            "status": "available",
            "cause": {"label": CAUSE},
            "effect": {"label": "Accès"},
            "periods": [{"begin": "2018-09-17T00:00:00+02:00", "end": "2018-09-18T23:30:00+02:00"}],
            "updated_at": "2018-09-15T12:01:31+02:00",
        },
    }


@pytest.mark.parametrize(
    "value, expected", [("ASCENSEUR", "elevator"), ("ESCALIER", "escalator")]
)
def test_embedded_type(value, expected):
    assert embedded_type(value) == expected


def test_embedded_type_unsupported():
    with pytest.raises(ValueError, match="Unsupported EmbeddedType ascenseur"):
        embedded_type("ascenseur")


@pytest.mark.parametrize(
    "now, expected",
    [
        (datetime(2018, 9, 13, 23, 59, tzinfo=PARIS), "available"),
        (datetime(2018, 9, 14, 0, 0, tzinfo=PARIS), "unavailable"),
        (datetime(2018, 9, 14, 12, 0, tzinfo=PARIS), "unavailable"),
        (datetime(2018, 9, 14, 13, 0, 1, tzinfo=PARIS), "available"),
    ],
)
def test_equipment_status(now, expected):
    start = datetime(2018, 9, 14, tzinfo=PARIS)
    end = datetime(2018, 9, 14, 13, 0, tzinfo=PARIS)
    assert equipment_status(start, end, now) == expected


def test_calculate_date():
    assert calculate_date(Info(date="2018-09-15", hour="12:01:31"), PARIS) == datetime(
        2018, 9, 15, 12, 1, 31, tzinfo=PARIS
    )


@pytest.mark.parametrize("info", [Info(date="15/09/2018", hour="12:01:31"), Info(date="2018-09-15", hour="25:00:00")])
def test_calculate_date_invalid(info):
    with pytest.raises(ValueError):
        calculate_date(info, PARIS)


def test_last_update_moves_forward():
    context = EquipmentsContext()
    begin = datetime.now().astimezone()
    assert context.last_equipment_update < begin
    context.update_equipments([])
    assert context.last_equipment_update >= begin


def test_refresh_loop_runs_until_stopped(net_access):
    context = EquipmentsContext()
    stop = threading.Event()
    stop.set()
    refresh_equipment_loop(context, net_access, 30, TIMEOUT, stop)
    assert len(context.get_equipments()) == 3


def test_refresh_loop_disabled(net_access):
    context = EquipmentsContext()
    refresh_equipment_loop(context, net_access, timedelta(0), TIMEOUT, threading.Event())
    with pytest.raises(NoDataError):
        context.get_equipments()