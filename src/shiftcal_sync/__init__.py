"""Two-way synchronization between a local shift calendar and Google Calendar."""

__version__ = "0.1.0"
