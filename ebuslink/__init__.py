"""eBUS protocol core: frames, CRC, bus transactions, observer events, collision monitoring and address joining."""

__version__ = "0.1.0"

__all__ = ["bus", "collision_monitor", "context", "dispatch", "frame", "join", "observer", "queue"]