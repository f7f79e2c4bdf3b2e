"""Repository layer for storefront persistence.

Thin Django ORM implementations of the ``KeyValueStorePort`` and
``ReconciliationPort`` so the domain layer is not coupled to ORM details.
"""

from typing import Optional

from .domain import CheckoutAttempt, CheckoutStage, KeyValueStorePort, ReconciliationPort
from .models import KeyValueEntry, ReconciliationIssue


class DjangoKeyValueStore(KeyValueStorePort):
    """Key-value store persisted in the ``storefront_kv`` table.

    Writes are upserts, so the last writer wins for a given key.
    """

    def get(self, namespace: str, key: str) -> Optional[str]:
        row = KeyValueEntry.objects.filter(namespace=namespace, key=key).values_list("value", flat=True).first()
        return row

    def set(self, namespace: str, key: str, value: str) -> None:
        KeyValueEntry.objects.update_or_create(namespace=namespace, key=key, defaults={"value": value})

    def delete(self, namespace: str, key: str) -> None:
        KeyValueEntry.objects.filter(namespace=namespace, key=key).delete()


class ReconciliationRepository(ReconciliationPort):
    """Persists post-payment failures as ``ReconciliationIssue`` rows."""

    def report(self, attempt: CheckoutAttempt, stage: CheckoutStage, detail: str) -> None:
        ReconciliationIssue.objects.create(
            attempt_id=attempt.attempt_id,
            intent_id=attempt.intent_id or "",
            stage=stage.value,
            detail=detail,
            payload={
                "lines": [
                    {"product_id": l.product_id, "size": l.size, "quantity": l.quantity}
                    for l in attempt.lines
                ],
                "decremented": list(attempt.decremented),
                "total": str(attempt.totals.total) if attempt.totals else None,
                "email": attempt.contact.email if attempt.contact else None,
            },
        )

    def open_issues(self):
        return ReconciliationIssue.objects.filter(resolved=False)
