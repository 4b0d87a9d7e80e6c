"""Slotkeeper: bookings kept consistent with users' external calendars."""

__version__ = "0.1.0"
