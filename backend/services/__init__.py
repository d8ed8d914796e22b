# services/__init__.py
# ============================================================================
# DUCK STOREFRONT v1.0 — SERVICES MODULE
# ============================================================================
# Collaborators of the order pipeline: catalog and notification sink
# ============================================================================

from services.catalog import (
    CatalogService,
)

from services.notifications import (
    INotificationSink,
    HttpNotificationSink,
    NullNotificationSink,
    RecordingNotificationSink,
    RelayConfig,
    create_notification_sink,
)

__all__ = [
    # Catalog
    "CatalogService",
    # Notifications
    "INotificationSink",
    "HttpNotificationSink",
    "NullNotificationSink",
    "RecordingNotificationSink",
    "RelayConfig",
    "create_notification_sink",
]
