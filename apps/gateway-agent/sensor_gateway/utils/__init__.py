from sensor_gateway.utils.keyed_lock import KeyedLock

__all__ = ["KeyedLock"]
