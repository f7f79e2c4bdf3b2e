from django.conf import settings
from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.storefront.models import ReconciliationIssue


def health_view(_request):
    """Liveness plus the size of the manual reconciliation backlog."""
    db_ok = False
    open_issues = None
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
        open_issues = ReconciliationIssue.objects.filter(resolved=False).count()
    except DatabaseError:
        db_ok = False

    return JsonResponse(
        {
            "ok": db_ok,
            "components": {
                "db": {"ok": db_ok},
                "adapters": "http" if getattr(settings, "USE_HTTP_ADAPTERS", True) else "stub",
                "reconciliation": {"open": open_issues},
            },
        },
        status=200 if db_ok else 503,
    )
