from .reflector import Reflector, Snapshot, Store, start

__all__ = ['Reflector', 'Snapshot', 'Store', 'start']
