"""Shared fixtures."""

from __future__ import annotations

import pytest

from replisync.ledger import ErrorLedger
from replisync.schema import SchemaDescriptor, SQLAlchemySchemaResolver
from tests.mocks import Customer, OrderLine


@pytest.fixture
def resolver() -> SQLAlchemySchemaResolver:
    return SQLAlchemySchemaResolver()


@pytest.fixture
def customer_schema(resolver: SQLAlchemySchemaResolver) -> SchemaDescriptor:
    return resolver.resolve(Customer)


@pytest.fixture
def order_line_schema(resolver: SQLAlchemySchemaResolver) -> SchemaDescriptor:
    return resolver.resolve(OrderLine)


@pytest.fixture
def ledger() -> ErrorLedger:
    return ErrorLedger(threshold=3)
