import pytest

from config_loader import DEFAULTS, flow_policy


@pytest.fixture
def purchase_policy():
    return flow_policy(DEFAULTS, "purchase")


@pytest.fixture
def sales_policy():
    return flow_policy(DEFAULTS, "sales")
