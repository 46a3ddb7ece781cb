import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

import main
from db import create_db_and_tables, get_session, make_engine
from ledger import ProductLocks, StockLedger
from models import Customer


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'inventory.db'}")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def ledger(session):
    return StockLedger(session, locks=ProductLocks())


@pytest.fixture
def customer(session):
    c = Customer(name="Test Customer", phone="123-456-7890", address="123 Test Street")
    session.add(c); session.commit(); session.refresh(c)
    return c


@pytest.fixture
def client(engine):
    def override_session():
        with Session(engine) as session:
            yield session

    main.app.dependency_overrides[get_session] = override_session
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
