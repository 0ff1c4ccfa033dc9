from app.models.package import (
    Package,
    PackageDestination,
    PackageSyncLog,
    PriceHistoryEntry,
)
from app.models.notification import NotificationLog, NotificationSetting

__all__ = [
    "NotificationLog",
    "NotificationSetting",
    "Package",
    "PackageDestination",
    "PackageSyncLog",
    "PriceHistoryEntry",
]
