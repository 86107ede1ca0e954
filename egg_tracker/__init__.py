"""Spaceship and coop contract tracker for Egg, Inc. accounts."""

__version__ = "0.1.0"
