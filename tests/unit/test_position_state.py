"""Unit tests for the position state machine and the early unstake penalty."""

from datetime import datetime, timedelta, timezone

from nftstake.db.models import StakingPosition
from nftstake.staking.periods import add_months
from nftstake.staking.positions import (
    UnstakeProof,
    apply_reward_distribution,
    can_unstake,
    early_unstake_penalty,
    is_eligible_for_rewards,
    next_reward_date,
    pending_reward_months,
    remaining_days,
    reward_distribution_changes,
    staking_progress,
    unstake,
    unstake_changes,
)

STAKED_AT = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _position(duration: int = 12, **overrides) -> StakingPosition:
    values = {
        "id": 1,
        "user_id": 1,
        "contract_id": 1,
        "wallet_address": "0x" + "ab" * 20,
        "blockchain": "ethereum",
        "nft_contract_address": "0x" + "11" * 20,
        "nft_token_id": "42",
        "staking_duration": duration,
        "staked_at": STAKED_AT,
        "unstake_at": add_months(STAKED_AT, duration),
        "status": "active",
        "last_reward_distribution": None,
        "total_rewards_earned": 0,
        "reward_summary": [],
        "penalty_applied": False,
        "penalty_amount": 0,
    }
    values.update(overrides)
    return StakingPosition(**values)


class TestEligibility:
    def test_active_inside_term(self):
        assert is_eligible_for_rewards(_position(), STAKED_AT + timedelta(days=40))

    def test_expired(self):
        position = _position()
        assert not is_eligible_for_rewards(position, position.unstake_at)

    def test_unstaked(self):
        assert not is_eligible_for_rewards(_position(status="unstaked"), STAKED_AT + timedelta(days=1))

    def test_can_unstake_only_after_maturity(self):
        position = _position(duration=6)
        assert not can_unstake(position, position.unstake_at - timedelta(seconds=1))
        assert can_unstake(position, position.unstake_at)

    def test_unstaked_cannot_unstake_again(self):
        position = _position(status="unstaked")
        assert not can_unstake(position, position.unstake_at + timedelta(days=1))


class TestPendingMonths:
    def test_counts_from_stake_date(self):
        assert pending_reward_months(_position(), datetime(2026, 3, 15, tzinfo=timezone.utc)) == 2

    def test_counts_from_last_distribution(self):
        position = _position(last_reward_distribution=datetime(2026, 3, 1, tzinfo=timezone.utc))
        assert pending_reward_months(position, datetime(2026, 3, 31, tzinfo=timezone.utc)) == 0

    def test_next_reward_date(self):
        position = _position(last_reward_distribution=datetime(2026, 2, 10, tzinfo=timezone.utc))
        assert next_reward_date(position, datetime(2026, 2, 20, tzinfo=timezone.utc)) == datetime(
            2026, 3, 10, tzinfo=timezone.utc
        )

    def test_no_next_reward_after_term(self):
        position = _position(duration=6, last_reward_distribution=datetime(2026, 6, 15, tzinfo=timezone.utc))
        # the next anniversary (July 15) falls after unstake_at (July 1)
        assert next_reward_date(position, datetime(2026, 6, 20, tzinfo=timezone.utc)) is None

    def test_no_next_reward_when_unstaked(self):
        assert next_reward_date(_position(status="unstaked"), STAKED_AT + timedelta(days=3)) is None


class TestProgress:
    def test_half_way(self):
        position = _position(duration=6)
        midpoint = STAKED_AT + (position.unstake_at - STAKED_AT) / 2
        assert staking_progress(position, midpoint) == 50.0

    def test_clamped(self):
        position = _position()
        assert staking_progress(position, STAKED_AT - timedelta(days=1)) == 0.0
        assert staking_progress(position, position.unstake_at + timedelta(days=30)) == 100.0

    def test_remaining_days_rounds_up(self):
        position = _position()
        assert remaining_days(position, position.unstake_at - timedelta(hours=1)) == 1
        assert remaining_days(position, position.unstake_at) == 0


class TestRewardBookkeeping:
    def test_apply_reward_distribution(self):
        position = _position()
        at = datetime(2026, 2, 1, tzinfo=timezone.utc)
        apply_reward_distribution(position, 12, 1.25, at)

        assert position.total_rewards_earned == 12
        assert position.last_reward_distribution == at
        assert position.reward_summary == [
            {
                "distributed_at": at.isoformat(),
                "open_entry_tickets": 12,
                "bonus_multiplier": 1.25,
                "distribution_type": "monthly",
                "month": 2,
                "year": 2026,
            }
        ]

    def test_distribution_changes_leave_position_untouched(self):
        earlier = {"open_entry_tickets": 12, "distribution_type": "monthly"}
        position = _position(total_rewards_earned=12, reward_summary=[earlier])
        at = datetime(2026, 4, 1, tzinfo=timezone.utc)

        changes = reward_distribution_changes(position, 24, 1.25, at, "missed")

        assert changes["total_rewards_earned"] == 36
        assert changes["last_reward_distribution"] == at
        assert changes["updated_at"] == at
        assert changes["reward_summary"][0] == earlier
        assert changes["reward_summary"][1]["distribution_type"] == "missed"
        assert position.total_rewards_earned == 12
        assert position.reward_summary == [earlier]
        assert position.last_reward_distribution is None


class TestEarlyUnstakePenalty:
    def test_half_term_is_five_percent(self):
        position = _position(duration=6, total_rewards_earned=100)
        midpoint = STAKED_AT + (position.unstake_at - STAKED_AT) / 2

        penalty, reason = early_unstake_penalty(position, midpoint)

        assert penalty == 5
        assert reason == "Early unstaking penalty: 5%"

    def test_capped_at_ten_percent(self):
        position = _position(total_rewards_earned=100)
        penalty, reason = early_unstake_penalty(position, STAKED_AT)
        assert penalty == 10
        assert reason == "Early unstaking penalty: 10%"

    def test_rounds_down(self):
        position = _position(duration=6, total_rewards_earned=15)
        midpoint = STAKED_AT + (position.unstake_at - STAKED_AT) / 2
        # 15 * 0.5 * 0.1 = 0.75
        assert early_unstake_penalty(position, midpoint)[0] == 0

    def test_no_penalty_after_maturity(self):
        position = _position(total_rewards_earned=100)
        assert early_unstake_penalty(position, position.unstake_at) == (0, None)

    def test_unstake_applies_penalty_and_proof(self):
        position = _position(duration=6, total_rewards_earned=100)
        midpoint = STAKED_AT + (position.unstake_at - STAKED_AT) / 2

        unstake(position, UnstakeProof("0xdeadbeef", 19_000_000), midpoint)

        assert position.status == "unstaked"
        assert position.actual_unstaked_at == midpoint
        assert position.penalty_applied is True
        assert position.penalty_amount == 5
        assert position.unstaking_tx_hash == "0xdeadbeef"
        assert position.unstaking_block_number == 19_000_000

    def test_matured_unstake_has_no_penalty(self):
        position = _position(total_rewards_earned=100)
        unstake(position, now=position.unstake_at + timedelta(days=1))
        assert position.status == "unstaked"
        assert position.penalty_applied is False
        assert position.penalty_amount == 0

    def test_early_unstake_with_no_rewards_is_flagged(self):
        position = _position()
        unstake(position, now=STAKED_AT + timedelta(days=10))
        assert position.penalty_applied is True
        assert position.penalty_amount == 0

    def test_unstake_changes_without_proof_or_penalty(self):
        position = _position()
        after = position.unstake_at + timedelta(days=1)

        changes = unstake_changes(position, now=after)

        assert changes == {"status": "unstaked", "actual_unstaked_at": after, "updated_at": after}
        assert position.status == "active"
