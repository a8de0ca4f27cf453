"""racesync: multi-device race timing sync over optimistic concurrency."""

__version__ = "0.1.0"
