import uuid
from django.db import models


class KeyValueEntry(models.Model):
    """Durable key-value record backing carts, rate entries and attempts."""

    namespace = models.CharField(max_length=64)
    key = models.CharField(max_length=200)
    value = models.TextField()
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "storefront_kv"
        constraints = [
            models.UniqueConstraint(fields=["namespace", "key"], name="ux_storefront_kv_namespace_key"),
        ]


class ReconciliationIssue(models.Model):
    # Post-payment failures waiting for manual follow-up
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    class Stage(models.TextChoices):
        STOCK_UPDATING = "STOCK_UPDATING"
        NOTIFYING = "NOTIFYING"

    attempt_id = models.CharField(max_length=64, db_index=True)
    intent_id = models.CharField(max_length=128, blank=True, default="")
    stage = models.CharField(max_length=32, choices=Stage.choices)
    detail = models.TextField()
    payload = models.JSONField(default=dict)
    resolved = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "storefront_reconciliation_issues"
        ordering = ["-created_at"]
