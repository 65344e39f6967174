from typing import Generator

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from db.models import Base
from domain.jurisdiction import TaxSettings
from domain.tax_engine import TaxEngine
from domain.tax_lots import TaxLotLedger
from tests.helpers.random_price_service import TestPriceService
from tests.helpers.time_utils import DEFAULT_TIME_GEN

engine: Engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
session_factory = sessionmaker(engine)


@pytest.fixture(scope="function")
def test_session() -> Generator[Session, None, None]:
    with session_factory() as session:
        yield session


@pytest.fixture(scope="function", autouse=True)
def reset_db() -> Generator[None, None, None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def _reset_default_time_gen() -> None:
    DEFAULT_TIME_GEN.reset()


@pytest.fixture(scope="function")
def price_service() -> TestPriceService:
    return TestPriceService(seed=3)


@pytest.fixture(scope="function")
def ledger() -> TaxLotLedger:
    return TaxLotLedger()


@pytest.fixture(scope="function")
def tax_engine(ledger: TaxLotLedger) -> TaxEngine:
    return TaxEngine(ledger=ledger, settings=TaxSettings())
