"""Test entities and in-memory store implementations.

The stores match the ``SourceStore`` / ``TargetStore`` protocols, allowing
engine tests to run without a database.
"""

from tests.mocks.entities import (
    Base,
    Customer,
    Document,
    KeysOnly,
    OrderLine,
    Product,
    TwoMarkers,
    make_customer,
)
from tests.mocks.store_mocks import (
    MockSourceStore,
    MockTargetStore,
    always_fails,
    fails_on_value,
)

__all__ = [
    # Entities
    "Base",
    "Customer",
    "OrderLine",
    "Document",
    "Product",
    "KeysOnly",
    "TwoMarkers",
    "make_customer",
    # Stores
    "MockSourceStore",
    "MockTargetStore",
    "always_fails",
    "fails_on_value",
]
