"""Total Landed Costs: auth and session core of the landed-cost portal."""

__version__ = "0.1.0"
