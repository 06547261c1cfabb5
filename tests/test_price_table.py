"""
test_price_table.py - Unit tests for the owner-gated price table
"""

import pytest

from confidential_ledger import PriceTable, MAX_UINT64, Unauthorized, PriceNotSet


@pytest.fixture
def table():
    return PriceTable("admin")


class TestSetPrice:

    def test_owner_sets_and_overwrites(self, table):
        table.set_price("admin", "T", 100)
        table.set_price("admin", "T", 250)
        assert table.get_price("T") == 250

    def test_non_owner_rejected(self, table):
        with pytest.raises(Unauthorized):
            table.set_price("alice", "T", 100)
        assert not table.is_tradeable("T")

    def test_zero_delists(self, table):
        table.set_price("admin", "T", 100)
        table.set_price("admin", "T", 0)
        assert table.price_of("T") is None
        with pytest.raises(PriceNotSet):
            table.get_price("T")

    @pytest.mark.parametrize("price", [-1, MAX_UINT64 + 1, 1.5, "100"])
    def test_invalid_price(self, table, price):
        with pytest.raises(ValueError):
            table.set_price("admin", "T", price)

    def test_empty_instrument(self, table):
        with pytest.raises(ValueError):
            table.set_price("admin", "", 1)

    def test_initial_prices(self):
        table = PriceTable("admin", {"A": 1, "B": 0})
        assert table.snapshot() == {"A": 1}
        assert len(table) == 1


class TestOwnership:

    def test_transfer(self, table):
        previous = table.transfer_ownership("admin", "carol")
        assert previous == "admin"
        assert table.owner == "carol"
        table.set_price("carol", "T", 5)
        with pytest.raises(Unauthorized):
            table.set_price("admin", "T", 6)

    def test_only_owner_transfers(self, table):
        with pytest.raises(Unauthorized):
            table.transfer_ownership("alice", "alice")
        assert table.owner == "admin"

    def test_empty_new_owner(self, table):
        with pytest.raises(ValueError):
            table.transfer_ownership("admin", " ")

    def test_empty_owner_at_construction(self):
        with pytest.raises(ValueError):
            PriceTable("")
