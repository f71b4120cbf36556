"""Unit tests for the contract registry tiers and reward arithmetic."""

import pytest

from nftstake.db.models import StakingContract
from nftstake.staking.errors import ContractInactiveError, UnsupportedDurationError
from nftstake.staking.registry import (
    DEFAULT_TIERS,
    calculate_monthly_rewards,
    calculate_projected_rewards,
    ensure_distributable,
    get_reward_structure,
    validate_contract_address,
)


def _contract(**overrides) -> StakingContract:
    values = {
        "id": 7,
        "blockchain": "ethereum",
        "contract_address": "0x" + "11" * 20,
        "contract_name": "Naffle Cats",
        "is_active": True,
        "is_validated": True,
        "six_months_tickets": 5,
        "six_months_multiplier": 1.1,
        "twelve_months_tickets": 12,
        "twelve_months_multiplier": 1.25,
        "three_years_tickets": 30,
        "three_years_multiplier": 1.5,
    }
    values.update(overrides)
    return StakingContract(**values)


class TestRewardStructure:
    @pytest.mark.parametrize("duration", [6, 12, 36])
    def test_matches_default_tiers(self, duration):
        assert get_reward_structure(_contract(), duration) == DEFAULT_TIERS[duration]

    @pytest.mark.parametrize("duration", [0, 1, 3, 24, 48])
    def test_unsupported_duration(self, duration):
        with pytest.raises(UnsupportedDurationError) as exc_info:
            get_reward_structure(_contract(), duration)
        assert exc_info.value.duration == duration
        assert exc_info.value.code == "unsupported_duration"

    def test_custom_tier_values(self):
        tier = get_reward_structure(_contract(twelve_months_tickets=20, twelve_months_multiplier=2.0), 12)
        assert tier.tickets_per_month == 20
        assert tier.bonus_multiplier == 2.0

    def test_zero_tickets_tier(self):
        assert get_reward_structure(_contract(six_months_tickets=0), 6).tickets_per_month == 0

    def test_zero_multiplier_is_kept(self):
        tier = get_reward_structure(_contract(three_years_multiplier=0.0), 36)
        assert tier.bonus_multiplier == 0.0
        assert calculate_projected_rewards(_contract(three_years_multiplier=0.0), 36)["effective_value"] == 0.0

    def test_unset_multiplier_is_neutral(self):
        assert get_reward_structure(_contract(six_months_multiplier=None), 6).bonus_multiplier == 1.0


class TestEnsureDistributable:
    def test_active_and_validated(self):
        ensure_distributable(_contract())

    def test_inactive(self):
        with pytest.raises(ContractInactiveError):
            ensure_distributable(_contract(is_active=False))

    def test_unvalidated(self):
        with pytest.raises(ContractInactiveError, match="not validated"):
            ensure_distributable(_contract(is_validated=False))


class TestRewardArithmetic:
    def test_monthly_rewards_scale_with_nft_count(self):
        assert calculate_monthly_rewards(_contract(), 12, nft_count=3) == 36

    def test_projection_over_full_term(self):
        projection = calculate_projected_rewards(_contract(), 12)
        assert projection["monthly_tickets"] == 12
        assert projection["total_tickets"] == 144
        assert projection["effective_value"] == pytest.approx(180.0)
        assert projection["breakdown"]["bonus_reward"] == pytest.approx(36.0)

    def test_projection_three_years_two_nfts(self):
        projection = calculate_projected_rewards(_contract(), 36, nft_count=2)
        assert projection["total_tickets"] == 30 * 2 * 36
        assert projection["effective_value"] == pytest.approx(2160 * 1.5)


class TestAddressValidation:
    def test_evm_address(self):
        assert validate_contract_address("0x" + "aB" * 20, "ethereum")
        assert validate_contract_address("0x" + "00" * 20, "base")

    def test_evm_address_wrong_length(self):
        assert not validate_contract_address("0x1234", "polygon")

    def test_solana_address(self):
        assert validate_contract_address("9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin", "solana")

    def test_solana_rejects_base58_excluded_chars(self):
        assert not validate_contract_address("0OIl" * 10, "solana")

    def test_unknown_chain(self):
        assert not validate_contract_address("0x" + "ab" * 20, "bitcoin")
