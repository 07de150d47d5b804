"""News impact prediction reliability and retrospective learning engine."""

__version__ = "1.0.0"
