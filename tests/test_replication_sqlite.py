"""End-to-end replication cycles against SQLite databases."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest
from sqlalchemy import select, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from replisync.config import ReplicationConfig
from replisync.cycle import ReplicationCycle
from replisync.ledger import ErrorLedger
from tests.mocks import Base, Customer, OrderLine, make_customer

pytestmark = pytest.mark.integration

TABLES = [Customer.__table__, OrderLine.__table__]


def customer_names(engine: Engine) -> dict[int, str]:
    with engine.connect() as conn:
        return dict(conn.execute(text("SELECT id, name FROM customers")).all())


def statuses(engine: Engine) -> dict[int, int]:
    with Session(engine) as session:
        return dict(session.execute(select(Customer.id, Customer.sync_status)).all())


@pytest.fixture
def config(tmp_path: Path) -> ReplicationConfig:
    return ReplicationConfig.from_dict(
        {
            "source": f"sqlite:///{tmp_path / 'source.db'}",
            "targets": [
                {"url": f"sqlite:///{tmp_path / 'a.db'}", "name": "replica-a"},
                {"url": f"sqlite:///{tmp_path / 'b.db'}", "name": "replica-b"},
            ],
        }
    )


@pytest.fixture
def cycle(config: ReplicationConfig):
    cycle = ReplicationCycle.from_config(
        config, ledger=ErrorLedger(), lock=threading.Lock()
    )
    for store in [cycle.source, *cycle.targets]:
        Base.metadata.create_all(store.engine, tables=TABLES)
    cycle.register(Customer)
    cycle.register(OrderLine)
    yield cycle
    cycle.close()


def seed(engine: Engine, *rows) -> None:
    with Session(engine) as session:
        session.add_all(rows)
        session.commit()


class TestSQLiteReplication:
    @pytest.mark.asyncio
    async def test_replicates_to_every_target(self, cycle):
        source = cycle.source.engine
        seed(
            source,
            *[make_customer(i) for i in range(1, 4)],
            OrderLine(order_id=1, line_no=1, sku="A", quantity=2, sync_status=0),
        )

        result = await cycle.run()

        assert result.succeeded
        assert result.loaded == {"Customer": 3, "OrderLine": 1}
        for target in cycle.targets:
            assert customer_names(target.engine) == {
                1: "customer-1",
                2: "customer-2",
                3: "customer-3",
            }
        assert set(statuses(source).values()) == {3}

    @pytest.mark.asyncio
    async def test_second_cycle_only_sends_changes(self, cycle):
        source = cycle.source.engine
        seed(source, make_customer(1), make_customer(2))
        await cycle.run()

        with source.begin() as conn:
            conn.execute(
                update(Customer.__table__)
                .where(Customer.__table__.c.id == 2)
                .values(name="renamed", sync_status=0)
            )

        result = await cycle.run()

        assert result.loaded == {"Customer": 1}
        for target in cycle.targets:
            assert customer_names(target.engine) == {1: "customer-1", 2: "renamed"}

    @pytest.mark.asyncio
    async def test_propagates_deletes(self, cycle):
        source = cycle.source.engine
        seed(source, make_customer(1), make_customer(2))
        await cycle.run()

        with source.begin() as conn:
            conn.execute(
                update(Customer.__table__)
                .where(Customer.__table__.c.id == 1)
                .values(is_deleted=True, sync_status=0)
            )
        await cycle.run()

        for target in cycle.targets:
            assert customer_names(target.engine) == {2: "customer-2"}
        assert statuses(source) == {1: 3, 2: 3}

    @pytest.mark.asyncio
    async def test_resumes_missing_target(self, cycle):
        source = cycle.source.engine
        # already applied to replica-a only
        seed(source, make_customer(1, status=1))

        await cycle.run()

        first, second = cycle.targets
        assert customer_names(first.engine) == {}
        assert customer_names(second.engine) == {1: "customer-1"}
        assert statuses(source) == {1: 3}

    @pytest.mark.asyncio
    async def test_idle_cycle(self, cycle):
        result = await cycle.run()
        assert result.succeeded
        assert result.loaded == {}
