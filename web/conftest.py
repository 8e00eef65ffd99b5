import pytest
from django.core.cache import cache


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"


@pytest.fixture(autouse=True)
def clear_throttle_cache():
    # Throttle counters live in the default cache
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def customer(django_user_model):
    return django_user_model.objects.create_user(
        username="wanjiku", email="wanjiku@example.com", password="pw-123456", first_name="Wanjiku"
    )


@pytest.fixture
def other_customer(django_user_model):
    return django_user_model.objects.create_user(username="otieno", email="otieno@example.com", password="pw-123456")


@pytest.fixture
def staff(django_user_model):
    return django_user_model.objects.create_user(
        username="admin", email="admin@example.com", password="pw-123456", is_staff=True
    )


@pytest.fixture
def make_product(db):
    from apps.catalog.models import Product

    counter = {"n": 0}

    def _make(**kw):
        counter["n"] += 1
        defaults = {
            "name": f"Brake Pad Set {counter['n']}",
            "part_number": f"BP-{counter['n']:04d}",
            "price_cents": 100_000,
            "stock": 5,
        }
        defaults.update(kw)
        return Product.objects.create(**defaults)

    return _make


@pytest.fixture
def product(make_product):
    """KES 1,000 part with 5 units in stock."""
    return make_product()


@pytest.fixture
def address():
    return {
        "name": "Wanjiku Kamau",
        "phone": "0712345678",
        "street": "Moi Avenue 12",
        "city": "Nairobi",
        "county": "Nairobi",
    }


@pytest.fixture
def customer_client(client, customer):
    client.force_login(customer)
    return client


@pytest.fixture
def staff_client(client, staff):
    client.force_login(staff)
    return client
