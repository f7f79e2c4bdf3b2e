# Makes ``apps``, ``gateway`` and ``config`` importable when pytest runs from the repo root
import sys
from pathlib import Path

import pytest

BASE_DIR = Path(__file__).resolve().parent  # .../web
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    """Every test starts on fresh in-process stubs with closed breakers."""
    from django.core.cache import cache

    from apps.storefront.http_adapters import reset_breakers
    from apps.storefront.providers import reset_stubs

    settings.USE_HTTP_ADAPTERS = False
    settings.HTTP_RETRY_BACKOFF_BASE = 0
    reset_stubs()
    reset_breakers()
    cache.clear()
    yield
    reset_stubs()
    reset_breakers()
