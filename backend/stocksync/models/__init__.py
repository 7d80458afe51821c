from .stores import Store, StoreConfig
from .inventory import InventoryItem, InventoryLevelMirror
from .sync import ReconciliationRun, ReconciliationLocationStat, InventoryWriteLock

__all__ = [
    'Store', 'StoreConfig',
    'InventoryItem', 'InventoryLevelMirror',
    'ReconciliationRun', 'ReconciliationLocationStat', 'InventoryWriteLock',
]
