import pytest


@pytest.fixture(autouse=True)
def use_simulated_providers(settings):
    """Run every test against the in-process providers with clean shared state."""
    from django.core.cache import cache

    from apps.orders.http_adapters import reset_breakers

    settings.USE_HTTP_ADAPTERS = False
    cache.clear()
    reset_breakers()
    yield
    reset_breakers()
