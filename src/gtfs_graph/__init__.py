"""GTFS feed importer with calendar expansion and graph node reconciliation."""

__version__ = "0.1.0"
