"""replisim: replication simulator for gossip protocol implementations."""

__version__ = "0.1.0"
