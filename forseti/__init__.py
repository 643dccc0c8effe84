"""Flask components serving real-time departures, parkings, equipments and free-floating vehicles."""

__version__ = "0.1.0"