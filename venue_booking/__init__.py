"""Venue Booking: booking lifecycle and calendar service for a single venue."""

__version__ = "1.0.0"
