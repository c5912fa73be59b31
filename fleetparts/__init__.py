"""FleetParts — parts procurement for fleet maintenance teams."""

__version__ = "1.0.0"
