import dataclasses
from datetime import timedelta

import pytest

from forseti.connectors import Connector, ConnectorType


def test_connector_type_values():
    assert ConnectorType("gtfsrt") is ConnectorType.GTFS_RT
    assert ConnectorType("oditi") is ConnectorType.ODITI


def test_connector_type_unknown():
    with pytest.raises(ValueError):
        ConnectorType("unknown")


def test_connector_keeps_fields():
    connector = Connector(
        "file:///data/", "http://localhost/feed", "token", timedelta(minutes=5), timedelta(seconds=10)
    )
    assert connector.url == "http://localhost/feed"
    assert connector.token == "token"
    assert connector.refresh_time == timedelta(minutes=5)
    assert connector.header == ""


def test_connector_is_immutable():
    connector = Connector("", "http://localhost/feed", "token", timedelta(0), timedelta(0))
    with pytest.raises(dataclasses.FrozenInstanceError):
        connector.token = "secret"
    assert connector.token == "token"
    assert connector.url == "http://localhost/feed"