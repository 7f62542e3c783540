"""
Shared fixtures: an in-memory engine on a controlled clock and a small catalog
"""

import copy
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from deposit_engine.clock import DeterministicClock
from deposit_engine.config import EngineConfig
from deposit_engine.engine import DepositEngine
from deposit_engine.parties import PartyType
from deposit_engine.products import DepositCategory, InterestMethod
from deposit_engine.storage import InMemoryStorage, create_storage


START = datetime(2024, 6, 15, 9, 0, 0, tzinfo=timezone.utc)

FD_ATTRIBUTES = {
    'rate_table': [
        {'tenor_days': 90, 'rate': '0.052'},
        {'tenor_days': 180, 'rate': '0.055'},
        {'tenor_days': 365, 'rate': '0.065'},
    ],
    'default_tenor_days': 180,
    'premature_threshold_months': 3,
    'premature_annual_rate': '0.03',
}


def build_engine(clock, **config_overrides) -> DepositEngine:
    return DepositEngine(
        storage=InMemoryStorage(),
        config=EngineConfig(**config_overrides),
        clock=clock
    )


def seed_catalog(engine: DepositEngine) -> DepositEngine:
    """Members M1 and M2, non-member N1, savings, non-member savings and FD products"""
    engine.register_party("M1", PartyType.MEMBER, "Asha Perera")
    engine.register_party("M2", PartyType.MEMBER, "Ravi Silva")
    engine.register_party("N1", PartyType.NON_MEMBER, "Dana Fernando")

    engine.register_product(
        "SAV", "Member Savings", DepositCategory.MEMBER_DEPOSITS,
        interest_method=InterestMethod.QUARTERLY_MIN_BALANCE, annual_rate=Decimal("0.12")
    )
    engine.register_product(
        "NMS", "Non-member Savings", DepositCategory.NON_MEMBER_DEPOSITS,
        interest_method=InterestMethod.QUARTERLY_MIN_BALANCE, annual_rate=Decimal("0.10")
    )
    engine.register_product(
        "FD", "Fixed Deposit", DepositCategory.MEMBER_DEPOSITS,
        interest_method=InterestMethod.FD_MATURITY, attributes=FD_ATTRIBUTES
    )
    return engine


@pytest.fixture
def clock():
    return DeterministicClock(START)


@pytest.fixture
def engine(clock):
    return build_engine(clock)


@pytest.fixture
def catalog(engine):
    return seed_catalog(engine)


@pytest.fixture
def fd_attributes():
    return copy.deepcopy(FD_ATTRIBUTES)


@pytest.fixture
def make_engine(clock):
    """Factory for engines with config overrides, seeded with the standard catalog"""
    def factory(**config_overrides):
        return seed_catalog(build_engine(clock, **config_overrides))
    return factory


@pytest.fixture
def sqlite_catalog(tmp_path, clock):
    engine = DepositEngine(
        storage=create_storage(f"sqlite:///{tmp_path / 'engine.db'}"),
        config=EngineConfig(),
        clock=clock
    )
    yield seed_catalog(engine)
    engine.close()
