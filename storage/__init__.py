"""Persistence layer: embedded SQLite store, remote REST store and the domain stores on top."""
