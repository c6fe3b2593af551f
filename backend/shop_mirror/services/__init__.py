"""
Services package for business logic layer.
"""
from shop_mirror.services.coordination import CoordinationGateService, GateAction, GateDecision
from shop_mirror.services.notification_service import NotificationService
from shop_mirror.services.replication import (
    MirrorNotFoundError,
    ReplicationOptions,
    ReplicationOrchestrator,
    ReplicationReport,
)
from shop_mirror.services.shopify_client import (
    ShopifyAPIError,
    ShopifyGraphQLClient,
    ShopifyUserError,
)
from shop_mirror.services.snapshot_refresher import SnapshotRefresher, SourceProductNotFoundError
from shop_mirror.services.webhook_pipeline import WebhookPipeline

__all__ = [
    "ShopifyGraphQLClient",
    "ShopifyAPIError",
    "ShopifyUserError",
    "ReplicationOrchestrator",
    "ReplicationOptions",
    "ReplicationReport",
    "MirrorNotFoundError",
    "CoordinationGateService",
    "GateAction",
    "GateDecision",
    "SnapshotRefresher",
    "SourceProductNotFoundError",
    "WebhookPipeline",
    "NotificationService",
]
