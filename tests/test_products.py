"""
Test suite for the product catalog and fixed-deposit rate resolution
"""

import pytest
from decimal import Decimal

from deposit_engine.audit import AuditEventType
from deposit_engine.config import EngineConfig
from deposit_engine.errors import ConfigurationError, NotFoundError, StateConflictError, ValidationError
from deposit_engine.products import (
    DepositCategory, FixedDepositProductConfig, InterestMethod, RateTier
)


class TestFixedDepositProductConfig:

    @pytest.fixture(autouse=True)
    def _defaults(self, fd_attributes):
        self.defaults = EngineConfig()
        self.attributes = fd_attributes

    def test_complete_attributes_need_no_repair(self):
        config, repaired = FixedDepositProductConfig.parse(self.attributes, self.defaults)
        assert repaired == []
        assert config.rate_table[1] == RateTier(180, Decimal("0.055"))
        assert config.default_tenor_days == 180
        assert config.premature_annual_rate == Decimal("0.03")

    def test_missing_attributes_default_from_config(self):
        config, repaired = FixedDepositProductConfig.parse({}, self.defaults)
        assert set(repaired) == {'rate_table', 'default_tenor_days',
                                 'premature_threshold_months', 'premature_annual_rate'}
        assert [tier.tenor_days for tier in config.rate_table] == [90, 180, 365]
        assert config.premature_threshold_months == 3

    def test_malformed_rate_table_replaced(self):
        attributes = dict(self.attributes, rate_table=[{'tenor_days': 'long', 'rate': '0.05'}])
        config, repaired = FixedDepositProductConfig.parse(attributes, self.defaults)
        assert repaired == ['rate_table']
        assert config.rate_table[0] == RateTier(90, Decimal("0.052"))

    def test_numeric_strings_accepted(self):
        attributes = dict(self.attributes, default_tenor_days="365", premature_threshold_months="6")
        config, repaired = FixedDepositProductConfig.parse(attributes, self.defaults)
        assert repaired == []
        assert config.default_tenor_days == 365
        assert config.premature_threshold_months == 6


class TestProductRateResolver:

    def test_exact_tenor_match(self, catalog):
        product = catalog.get_product("FD")
        config = catalog.rate_resolver.ensure_configured(product)
        assert catalog.rate_resolver.resolve(config, 365) == (365, Decimal("0.065"))

    def test_default_tenor_when_none_requested(self, catalog):
        config = catalog.rate_resolver.ensure_configured(catalog.get_product("FD"))
        assert catalog.rate_resolver.resolve(config) == (180, Decimal("0.055"))

    def test_unknown_tenor_falls_back_to_first_tier(self, catalog):
        config = catalog.rate_resolver.ensure_configured(catalog.get_product("FD"))
        assert catalog.rate_resolver.resolve(config, 45) == (90, Decimal("0.052"))

    def test_unresolvable_rate_is_configuration_error(self, catalog, fd_attributes):
        catalog.register_product(
            "FDZ", "Broken FD", DepositCategory.MEMBER_DEPOSITS,
            interest_method=InterestMethod.FD_MATURITY,
            attributes=dict(fd_attributes, rate_table=[{'tenor_days': 90, 'rate': '0'}])
        )
        config = catalog.rate_resolver.ensure_configured(catalog.get_product("FDZ"))
        with pytest.raises(ConfigurationError):
            catalog.rate_resolver.resolve(config, 180)

    def test_repair_is_written_back_once(self, catalog):
        catalog.register_product(
            "FD2", "Legacy FD", DepositCategory.MEMBER_DEPOSITS,
            interest_method=InterestMethod.FD_MATURITY, attributes={'default_tenor_days': 90}
        )
        resolver = catalog.rate_resolver

        resolver.ensure_configured(catalog.get_product("FD2"))
        resolver.ensure_configured(catalog.get_product("FD2"))

        stored = catalog.get_product("FD2").attributes
        assert stored['default_tenor_days'] == 90
        assert len(stored['rate_table']) == 3
        repairs = catalog.audit_trail.get_events_by_type(AuditEventType.PRODUCT_CONFIG_REPAIRED)
        assert len(repairs) == 1
        assert 'default_tenor_days' not in repairs[0].metadata['repaired']


class TestProductStore:

    def test_duplicate_code_rejected(self, catalog):
        with pytest.raises(StateConflictError):
            catalog.register_product("SAV", "Again", DepositCategory.MEMBER_DEPOSITS)

    def test_negative_rate_rejected(self, catalog):
        with pytest.raises(ValidationError):
            catalog.register_product("BAD", "Bad", DepositCategory.MEMBER_DEPOSITS,
                                     annual_rate=Decimal("-0.01"))

    def test_update_preserves_totals(self, catalog):
        catalog.open_account("M1", "SAV", initial_deposit=Decimal("250.00"))

        product = catalog.get_product("SAV")
        product.name = "Renamed Savings"
        product.total_balance = Decimal("0.00")
        catalog.products.update("SAV", product)

        reloaded = catalog.get_product("SAV")
        assert reloaded.name == "Renamed Savings"
        assert reloaded.total_balance == Decimal("250.00")

    def test_unknown_product(self, catalog):
        with pytest.raises(NotFoundError):
            catalog.get_product("NOPE")

    def test_inactive_product_blocks_opening(self, catalog):
        catalog.products.set_active("SAV", False)
        with pytest.raises(StateConflictError):
            catalog.open_account("M1", "SAV")
